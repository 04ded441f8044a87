from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from tenantauth.logging import get_correlation_id
from tenantauth.service.validation import (
    normalize_email,
    normalize_identifier,
    normalize_username,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_expired",
    "token_malformed",
    "token_invalid",
    "session_invalidated",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "store_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RegisterRequest(BaseModel):
    username: str = Field(..., max_length=64)
    email: str = Field(..., max_length=254)
    # Strength rules depend on settings and are enforced by AuthService
    password: str = Field(..., max_length=128)
    organization_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        return normalize_username(value)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        return normalize_email(value)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return normalize_identifier(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class PasswordResetRequest(BaseModel):
    new_password: str = Field(..., min_length=1, max_length=128)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_expires_in: int


class PrincipalResponse(BaseModel):
    id: str
    username: str
    email: str
    role: str
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    is_email_verified: bool = False


class QuotaLimitsRequest(BaseModel):
    plugins: Optional[int] = Field(default=None, ge=-1)
    pipelines: Optional[int] = Field(default=None, ge=-1)
    apiCalls: Optional[int] = Field(default=None, ge=-1)

    def limits(self) -> Dict[str, int]:
        return {k: v for k, v in self.model_dump().items() if v is not None}


class QuotaIncrementRequest(BaseModel):
    amount: int = Field(default=1, ge=1)


class QuotaResetRequest(BaseModel):
    quota_type: Optional[str] = None
