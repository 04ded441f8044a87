from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

from tenantauth.logging import log_security_event
from tenantauth.service.errors import (
    NotFoundError,
    SessionInvalidatedError,
    translate_store_errors,
)
from tenantauth.service.opaque_tokens import OpaqueTokenGenerator
from tenantauth.service.signing import CredentialSigner, TokenClaims
from tenantauth.storage.errors import PrincipalNotFound

ContextLoader = Callable[[str], Mapping[str, Any]]


class SessionStore(Protocol):
    """Atomic per-principal session state: ``(token_version, refresh_token_hash)``.

    ``cas_rotate`` and ``invalidate_all`` must each be a single atomic
    operation at the store. Implementations raise ``StoreUnavailable`` for
    infrastructure failures and ``PrincipalNotFound`` for unknown ids on reads.
    """

    def read_token_version(self, principal_id: str) -> int:
        ...

    def read_current_refresh_hash(self, principal_id: str) -> Optional[str]:
        ...

    def cas_rotate(self, principal_id: str, expected_hash: str, new_hash: str) -> bool:
        ...

    def invalidate_all(self, principal_id: str) -> None:
        ...

    def set_initial_session(self, principal_id: str, refresh_hash: str) -> None:
        ...


class SessionPrincipal(Protocol):
    id: str
    token_version: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"


class SessionManager:
    """Issues, verifies, rotates and revokes access/refresh token pairs.

    Holds no mutable state of its own, so one instance serves every request
    thread. All session mutations go through the store's three atomic
    operations; the manager never read-modify-writes session fields.

    A refresh token that fails the version check or loses the compare-and-swap
    is treated as stolen: every session of the principal is revoked.
    """

    def __init__(
        self,
        store: SessionStore,
        access_signer: CredentialSigner,
        refresh_signer: CredentialSigner,
        opaque: OpaqueTokenGenerator,
        *,
        security_event: Callable[..., None] = log_security_event,
    ) -> None:
        if access_signer is refresh_signer:
            raise ValueError("access and refresh tokens need separate signers")
        self.store = store
        self.access_signer = access_signer
        self.refresh_signer = refresh_signer
        self.opaque = opaque
        self._security_event = security_event

    def _mint_refresh(self, principal_id: str, token_version: int) -> str:
        return self.refresh_signer.issue(
            principal_id, token_version, token_id=self.opaque.new_token()
        )

    def _pair(
        self,
        principal_id: str,
        token_version: int,
        refresh_token: str,
        context: Optional[Mapping[str, Any]],
    ) -> TokenPair:
        access_token = self.access_signer.issue(
            principal_id, token_version, context=context
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_signer.default_ttl_seconds,
            refresh_expires_in=self.refresh_signer.default_ttl_seconds,
        )

    def issue_initial(
        self,
        principal: SessionPrincipal,
        *,
        context: Optional[Mapping[str, Any]] = None,
    ) -> TokenPair:
        """Start a session after the caller has authenticated the principal.

        Supersedes any refresh token the principal held before.
        """
        refresh_token = self._mint_refresh(principal.id, principal.token_version)
        with translate_store_errors():
            try:
                self.store.set_initial_session(
                    principal.id, self.opaque.hash(refresh_token)
                )
            except PrincipalNotFound as exc:
                raise NotFoundError("principal not found") from exc
        return self._pair(principal.id, principal.token_version, refresh_token, context)

    def verify_access(self, token: str) -> TokenClaims:
        claims = self.access_signer.verify(token)
        with translate_store_errors():
            try:
                current_version = self.store.read_token_version(claims.subject)
            except PrincipalNotFound as exc:
                raise SessionInvalidatedError("Session is no longer valid") from exc
        if current_version != claims.token_version:
            raise SessionInvalidatedError("Session is no longer valid")
        return claims

    def rotate(
        self,
        refresh_token: str,
        *,
        context_loader: Optional[ContextLoader] = None,
    ) -> TokenPair:
        """Exchange a refresh token for a new pair, exactly once.

        Signature, expiry and malformed-token failures propagate untouched and
        leave the store alone. ``context_loader`` supplies fresh context claims
        for the new access token and runs before the swap, so a failure there
        cannot strand the new refresh token.
        """
        claims = self.refresh_signer.verify(refresh_token)
        subject = claims.subject
        presented_hash = self.opaque.hash(refresh_token)

        with translate_store_errors():
            try:
                current_version = self.store.read_token_version(subject)
            except PrincipalNotFound as exc:
                raise SessionInvalidatedError("Session is no longer valid") from exc

            if current_version != claims.token_version:
                self._reuse_detected(
                    subject,
                    "version_mismatch",
                    presented_version=claims.token_version,
                    current_version=current_version,
                )

            context = dict(context_loader(subject)) if context_loader else None
            new_refresh = self._mint_refresh(subject, current_version)
            if not self.store.cas_rotate(
                subject, presented_hash, self.opaque.hash(new_refresh)
            ):
                self._reuse_detected(subject, "hash_mismatch", token_id=claims.token_id)

        return self._pair(subject, current_version, new_refresh, context)

    def _reuse_detected(self, principal_id: str, reason: str, **details: Any) -> None:
        self.store.invalidate_all(principal_id)
        self._security_event(
            "refresh_token_reuse_detected",
            severity="high",
            principal_id=principal_id,
            reason=reason,
            **details,
        )
        raise SessionInvalidatedError("Session is no longer valid, please log in again")

    def logout(self, principal_id: str) -> None:
        """Revoke every outstanding token of the principal. Idempotent."""
        with translate_store_errors():
            self.store.invalidate_all(principal_id)


__all__ = ["SessionManager", "SessionStore", "TokenPair", "ContextLoader"]
