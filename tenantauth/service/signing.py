from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from tenantauth.service.errors import (
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)

_DIGESTS = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}

RESERVED_CLAIMS = frozenset({"sub", "ver", "iat", "exp", "typ", "iss", "aud", "jti"})

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of an access or refresh credential.

    ``context`` holds the caller-supplied claims (role, organization) exactly as
    they were at issuance. They are not re-read at verification time.
    """

    subject: str
    token_version: int
    issued_at: int
    expires_at: int
    token_type: str
    token_id: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _decode_json_segment(segment: str, what: str) -> dict[str, Any]:
    try:
        value = json.loads(_decode_segment(segment))
    except (binascii.Error, ValueError, RecursionError) as exc:
        raise TokenMalformedError(f"token {what} is not valid base64 JSON") from exc
    if not isinstance(value, dict):
        raise TokenMalformedError(f"token {what} is not a JSON object")
    return value


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class CredentialSigner:
    """Issues and verifies HMAC-signed compact tokens.

    Verification is pure: it never consults session state. Revocation is
    layered on top by the session manager comparing ``token_version``.
    One instance is bound to a single key and token type, so access and
    refresh credentials use separate signers with separate secrets.
    """

    def __init__(
        self,
        secret: str,
        *,
        token_type: str = ACCESS,
        algorithm: str = "HS256",
        issuer: str,
        audience: str,
        default_ttl_seconds: int,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        algorithm = getattr(algorithm, "value", algorithm)
        if algorithm not in _DIGESTS:
            raise ValueError(f"unsupported signing algorithm: {algorithm}")
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self._key = secret.encode("utf-8")
        self._digest = _DIGESTS[algorithm]
        self.algorithm = algorithm
        self.token_type = token_type
        self.issuer = issuer
        self.audience = audience
        self.default_ttl_seconds = default_ttl_seconds
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode("utf-8"), self._digest).digest()
        )

    def issue(
        self,
        subject: str,
        token_version: int,
        *,
        ttl_seconds: Optional[int] = None,
        context: Optional[Mapping[str, Any]] = None,
        token_id: Optional[str] = None,
    ) -> str:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        if not _is_int(token_version) or token_version < 0:
            raise ValueError("token_version must be a non-negative integer")
        context = dict(context or {})
        clashing = RESERVED_CLAIMS.intersection(context)
        if clashing:
            raise ValueError(f"context claims may not override {sorted(clashing)}")

        now = int(self._clock())
        payload: dict[str, Any] = {
            **context,
            "sub": subject,
            "ver": token_version,
            "iat": now,
            "exp": now + ttl,
            "typ": self.token_type,
            "iss": self.issuer,
            "aud": self.audience,
        }
        if token_id is not None:
            payload["jti"] = token_id

        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        """Return the claims of an authentic, unexpired token of this signer's type.

        Raises:
            TokenMalformedError: token cannot be decoded or lacks required claims
            TokenSignatureError: signature, algorithm, issuer, audience or type mismatch
            TokenExpiredError: authentic token past ``exp`` (minus leeway)
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformedError("token must have three segments")
        if not token.isascii():
            raise TokenMalformedError("token must be ASCII")
        header_b64, payload_b64, sig_b64 = token.split(".")
        if not header_b64 or not payload_b64 or not sig_b64:
            raise TokenMalformedError("token has an empty segment")

        header = _decode_json_segment(header_b64, "header")
        # Pinned algorithm, no negotiation from the header
        if header.get("alg") != self.algorithm:
            raise TokenSignatureError("token algorithm not accepted")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("utf-8")):
            raise TokenSignatureError("token signature mismatch")

        payload = _decode_json_segment(payload_b64, "payload")
        subject = payload.get("sub")
        version = payload.get("ver")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        token_id = payload.get("jti")
        if not isinstance(subject, str) or not subject:
            raise TokenMalformedError("token subject missing")
        if not _is_int(version) or version < 0:
            raise TokenMalformedError("token version missing")
        if not _is_int(issued_at) or not _is_int(expires_at):
            raise TokenMalformedError("token timestamps missing")
        if token_id is not None and not isinstance(token_id, str):
            raise TokenMalformedError("token id must be a string")

        if payload.get("iss") != self.issuer:
            raise TokenSignatureError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenSignatureError("token audience mismatch")
        if payload.get("typ") != self.token_type:
            raise TokenSignatureError("token type mismatch")

        if expires_at <= self._clock() - self.leeway_seconds:
            raise TokenExpiredError("token expired")

        context = {k: v for k, v in payload.items() if k not in RESERVED_CLAIMS}
        return TokenClaims(
            subject=subject,
            token_version=version,
            issued_at=issued_at,
            expires_at=expires_at,
            token_type=self.token_type,
            token_id=token_id,
            context=context,
        )


__all__ = ["ACCESS", "REFRESH", "CredentialSigner", "TokenClaims", "RESERVED_CLAIMS"]
