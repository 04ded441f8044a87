from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from tenantauth.storage.errors import StoreUnavailable


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized, token_expired, token_malformed, token_invalid,
      session_invalidated (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - store_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenError(AuthenticationError):
    """A presented credential failed intrinsic verification.

    Token errors never mutate session state.
    """


class TokenExpiredError(TokenError):
    """Credential is well formed and authentic but past its expiry."""
    error_code = "token_expired"


class TokenMalformedError(TokenError):
    """Credential could not be decoded or lacks required claims."""
    error_code = "token_malformed"


class TokenSignatureError(TokenError):
    """Signature, algorithm, issuer, audience or token type did not match."""
    error_code = "token_invalid"


class SessionInvalidatedError(AuthenticationError):
    """Session was revoked, superseded or poisoned by refresh token reuse."""
    error_code = "session_invalidated"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StoreUnavailableError(ServiceError):
    """Session store unreachable; the caller may retry (503)."""
    status_code = 503
    error_code = "store_unavailable"


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Surface storage outages as a retryable 503 service error."""
    try:
        yield
    except StoreUnavailable as exc:
        raise StoreUnavailableError(
            "Session store unavailable, retry shortly", detail={"retryable": True}
        ) from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "TokenError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenSignatureError",
    "SessionInvalidatedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailableError",
    "translate_store_errors",
]
