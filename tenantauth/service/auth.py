from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
    translate_store_errors,
)
from tenantauth.service.sessions import SessionManager, SessionStore, TokenPair
from tenantauth.service.signing import TokenClaims
from tenantauth.service.validation import (
    effective_org_name,
    normalize_email,
    normalize_identifier,
    normalize_username,
    validate_password_strength,
)
from tenantauth.storage.errors import ConstraintViolation, PrincipalNotFound
from tenantauth.storage.models import QUOTA_TYPES, UNLIMITED, Organization, Principal

logger = get_logger(__name__)

SYSTEM_ORG_ID = "system"


class AccountStore(SessionStore, Protocol):
    def create_principal_with_organization(
        self, principal: Principal, organization: Organization
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_identifier(self, identifier: str) -> Optional[Principal]: ...

    def get_organization(self, org_id: str) -> Optional[Organization]: ...

    def update_password_hash(self, principal_id: str, password_hash: str) -> None: ...


@dataclass
class AuthContext:
    """Caller identity derived from a verified access token.

    Role and organization come from the token snapshot and may lag behind the
    store until the next refresh.
    """

    principal_id: str
    role: str
    token_version: int
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None
    is_email_verified: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @classmethod
    def from_claims(cls, claims: TokenClaims) -> "AuthContext":
        ctx = claims.context
        return cls(
            principal_id=claims.subject,
            role=ctx.get("role") or "user",
            token_version=claims.token_version,
            organization_id=ctx.get("org_id"),
            organization_name=ctx.get("org_name"),
            username=ctx.get("username"),
            email=ctx.get("email"),
            is_email_verified=bool(ctx.get("email_verified", False)),
        )


class AuthService:
    """Registration, password login and the HTTP-facing session operations."""

    def __init__(
        self,
        store: AccountStore,
        sessions: SessionManager,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against on unknown identifiers so both paths cost one argon2 check
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.logger = logger

    # -- passwords --------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def verify_password(self, principal: Optional[Principal], password: str) -> bool:
        if principal is None or not principal.password_hash:
            self._check(self._dummy_hash, password)
            return False
        return self._check(principal.password_hash, password)

    # -- claims -----------------------------------------------------------

    def principal_context(self, principal: Principal) -> dict[str, Any]:
        """Context claims snapshotted into access tokens."""
        org_name = None
        if principal.organization_id:
            org = self.store.get_organization(principal.organization_id)
            org_name = org.name if org else None
        return {
            "username": principal.username,
            "email": principal.email,
            "role": principal.role,
            "is_admin": principal.is_admin,
            "org_id": principal.organization_id,
            "org_name": org_name,
            "email_verified": principal.is_email_verified,
        }

    def _load_context(self, principal_id: str) -> dict[str, Any]:
        principal = self.store.get_principal(principal_id)
        return self.principal_context(principal) if principal else {}

    # -- operations -------------------------------------------------------

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        organization_name: Optional[str] = None,
    ) -> Tuple[Principal, Organization]:
        """Create an admin principal together with the organization it owns."""
        if not self.settings.allow_signup:
            raise ForbiddenError("Registration is disabled")
        if not username or not email or not password:
            raise ValidationError("Missing required fields")
        try:
            username = normalize_username(username)
            email = normalize_email(email)
            validate_password_strength(password, self.settings.password_min_length)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        org_name = effective_org_name(organization_name, username)
        principal = Principal.new(
            username,
            email,
            password_hash=self._hash_password(password),
            role="admin",
        )
        if org_name.lower() == SYSTEM_ORG_ID:
            organization = Organization(
                id=SYSTEM_ORG_ID,
                name=SYSTEM_ORG_ID,
                quotas={quota_type: UNLIMITED for quota_type in QUOTA_TYPES},
            )
        else:
            organization = Organization(id=str(uuid.uuid4()), name=org_name)
        organization.owner_id = principal.id
        organization.member_ids = [principal.id]

        try:
            with translate_store_errors():
                self.store.create_principal_with_organization(principal, organization)
        except ConstraintViolation as exc:
            self.logger.info("registration_conflict", field=exc.detail.get("field"))
            raise ConflictError("Credentials already in use") from exc

        self.logger.info(
            "principal_registered",
            principal_id=principal.id,
            organization_id=organization.id,
        )
        return principal, organization

    async def login(self, identifier: str, password: str) -> Tuple[Principal, TokenPair]:
        if not identifier or not password:
            raise ValidationError("Missing required fields")
        with translate_store_errors():
            principal = self.store.get_principal_by_identifier(
                normalize_identifier(identifier)
            )
            if not self.verify_password(principal, password):
                self.logger.info("login_failed", reason="invalid_credentials")
                raise AuthenticationError("Invalid credentials")
            context = self.principal_context(principal)
        tokens = self.sessions.issue_initial(principal, context=context)
        self.logger.info("login_succeeded", principal_id=principal.id)
        return principal, tokens

    async def issue_token(self, principal_id: str) -> TokenPair:
        """Start a fresh session for an already authenticated principal."""
        with translate_store_errors():
            principal = self._require_principal(principal_id)
            context = self.principal_context(principal)
        tokens = self.sessions.issue_initial(principal, context=context)
        self.logger.info("token_issued", principal_id=principal.id)
        return tokens

    async def refresh(self, refresh_token: str) -> TokenPair:
        with translate_store_errors():
            return self.sessions.rotate(refresh_token, context_loader=self._load_context)

    async def logout(self, principal_id: str) -> None:
        self.sessions.logout(principal_id)
        self.logger.info("logout", principal_id=principal_id)

    async def change_password(
        self, principal_id: str, current_password: str, new_password: str
    ) -> None:
        """Replace the password and revoke every session, the caller's included."""
        if not current_password or not new_password:
            raise ValidationError("Missing password fields")
        with translate_store_errors():
            principal = self._require_principal(principal_id)
            if not self.verify_password(principal, current_password):
                self.logger.info("password_change_failed", principal_id=principal_id)
                raise AuthenticationError("Current password incorrect")
        self._replace_password(principal_id, new_password)
        self.logger.info("password_changed", principal_id=principal_id)

    async def reset_password(
        self, admin: AuthContext, principal_id: str, new_password: str
    ) -> None:
        """Admin override of a principal's password; also revokes its sessions.

        System admins may reset anyone, organization admins only their members.
        """
        if not admin.is_admin:
            raise ForbiddenError("Admin access required")
        if not new_password:
            raise ValidationError("Missing password fields")
        with translate_store_errors():
            principal = self._require_principal(principal_id)
        if (
            admin.organization_id != SYSTEM_ORG_ID
            and principal.organization_id != admin.organization_id
        ):
            raise ForbiddenError("Can only manage principals in your organization")
        self._replace_password(principal_id, new_password)
        self.logger.info(
            "password_reset", principal_id=principal_id, admin_id=admin.principal_id
        )

    def _replace_password(self, principal_id: str, new_password: str) -> None:
        try:
            validate_password_strength(new_password, self.settings.password_min_length)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        password_hash = self._hash_password(new_password)
        # Sessions end before the hash write, so a failed write still revokes them
        self.sessions.logout(principal_id)
        with translate_store_errors():
            try:
                self.store.update_password_hash(principal_id, password_hash)
            except PrincipalNotFound as exc:
                raise NotFoundError("principal not found") from exc

    def _require_principal(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("Invalid header")
        claims = self.sessions.verify_access(token)
        return AuthContext.from_claims(claims)
