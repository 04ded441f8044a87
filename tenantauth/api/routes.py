from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from tenantauth.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    PasswordResetRequest,
    PrincipalResponse,
    QuotaIncrementRequest,
    QuotaLimitsRequest,
    QuotaResetRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
)
from tenantauth.logging import get_logger
from tenantauth.service.auth import SYSTEM_ORG_ID, AuthContext
from tenantauth.service.runtime import check_rate_limit, get_runtime
from tenantauth.service.sessions import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one token for ``key`` or raise 429 with Retry-After."""
    allowed, remaining, retry_after = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, retry_after)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, retry_after=retry_after)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, retry_after))},
        )
    return info


async def _enforce_auth_rate_limit(request: Request, response: Response, action: str) -> None:
    runtime = get_runtime()
    client_ip = request.client.host if request.client else "unknown"
    await _enforce_rate_limit(
        runtime,
        f"auth:{action}:{client_ip}",
        runtime.settings.auth_rate_limit_max,
        runtime.settings.auth_rate_limit_window_seconds,
        response=response,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def _token_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        refresh_expires_in=tokens.refresh_expires_in,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and the organization it administers.

    Raises:
        400: Invalid fields or weak password
        403: Registration disabled
        409: Email or username already in use
        429: Too many auth requests from this client
    """
    await _enforce_auth_rate_limit(request, response, "register")
    runtime = get_runtime()
    principal, organization = await runtime.auth.register(
        username=body.username,
        email=body.email,
        password=body.password,
        organization_name=body.organization_name,
    )
    return Envelope(
        status="ok",
        data={
            "user": PrincipalResponse(
                id=principal.id,
                username=principal.username,
                email=principal.email,
                role=principal.role,
                organization_id=organization.id,
                organization_name=organization.name,
                is_email_verified=principal.is_email_verified,
            ).model_dump()
        },
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate by email or username and start a new session.

    Any refresh token issued earlier to the same principal is superseded.
    """
    await _enforce_auth_rate_limit(request, response, "login")
    runtime = get_runtime()
    _, tokens = await runtime.auth.login(body.identifier, body.password)
    return Envelope(status="ok", data=_token_response(tokens).model_dump())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, request: Request, response: Response):
    """Rotate a refresh token. Presenting an already-used token revokes all sessions."""
    await _enforce_auth_rate_limit(request, response, "refresh")
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(tokens).model_dump())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.principal_id)
    return Envelope(status="ok", data={"message": "Logged out"})


@router.post("/auth/token", response_model=Envelope, tags=["auth"])
async def issue_token(principal: AuthContext = Depends(get_user)):
    """Start a new session for the caller, superseding its current refresh token."""
    runtime = get_runtime()
    tokens = await runtime.auth.issue_token(principal.principal_id)
    return Envelope(status="ok", data=_token_response(tokens).model_dump())


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Replace the caller's password. Every session ends, so clients must log in again.

    Raises:
        400: Weak new password
        401: Current password incorrect
    """
    await _enforce_auth_rate_limit(request, response, "change_password")
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.principal_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data={"message": "Password changed, sign in again"})


@router.post("/principals/{principal_id}/password", response_model=Envelope, tags=["admin"])
async def reset_principal_password(
    principal_id: str,
    body: PasswordResetRequest,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.auth.reset_password(principal, principal_id, body.new_password)
    return Envelope(status="ok", data={"principal_id": principal_id, "sessions_revoked": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    """Profile of the caller as captured in the access token."""
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            id=principal.principal_id,
            username=principal.username or "",
            email=principal.email or "",
            role=principal.role,
            organization_id=principal.organization_id,
            organization_name=principal.organization_name,
            is_email_verified=principal.is_email_verified,
        ).model_dump(),
    )


def _require_org_access(principal: AuthContext, org_id: str, *, admin: bool = False) -> None:
    """Members of the organization, or admins of the system organization."""
    if admin and not principal.is_admin:
        raise _http_error("forbidden", "admin access required", status_code=403)
    platform_admin = principal.is_admin and principal.organization_id == SYSTEM_ORG_ID
    if principal.organization_id != org_id and not platform_admin:
        raise _http_error(
            "forbidden", "You do not belong to this organization", status_code=403
        )


@router.get("/quotas/{org_id}/{quota_type}", response_model=Envelope, tags=["quotas"])
async def check_quota(
    org_id: str,
    quota_type: str,
    principal: AuthContext = Depends(get_user),
    authorization: Optional[str] = Header(None),
):
    """Current quota status for an organization; unlimited when the quota service is down."""
    _require_org_access(principal, org_id)
    runtime = get_runtime()
    status = await runtime.quota.check(org_id, quota_type, authorization)
    return Envelope(
        status="ok", data={"quota_type": quota_type, "status": status.as_dict()}
    )


@router.put("/quotas/{org_id}", response_model=Envelope, tags=["quotas"])
async def update_quota_limits(
    org_id: str,
    body: QuotaLimitsRequest,
    principal: AuthContext = Depends(get_user),
    authorization: Optional[str] = Header(None),
):
    _require_org_access(principal, org_id, admin=True)
    limits = body.limits()
    if not limits:
        raise _http_error("validation_error", "no quota limits provided", status_code=400)
    runtime = get_runtime()
    updated = await runtime.quota.update_limits(org_id, limits, authorization)
    if not updated:
        raise _http_error("server_error", "quota service rejected the update", status_code=502)
    return Envelope(status="ok", data={"org_id": org_id, "limits": limits})


@router.post(
    "/quotas/{org_id}/{quota_type}/increment",
    response_model=Envelope,
    status_code=202,
    tags=["quotas"],
)
async def increment_quota(
    org_id: str,
    quota_type: str,
    body: Optional[QuotaIncrementRequest] = None,
    principal: AuthContext = Depends(get_user),
    authorization: Optional[str] = Header(None),
):
    """Record usage. Accepted immediately; the quota service is updated in the background."""
    _require_org_access(principal, org_id)
    amount = body.amount if body is not None else 1
    runtime = get_runtime()
    task = runtime.quota.increment(org_id, quota_type, amount, authorization)
    return Envelope(
        status="ok",
        data={"quota_type": quota_type, "amount": amount, "queued": task is not None},
    )


@router.post("/quotas/{org_id}/reset", response_model=Envelope, tags=["quotas"])
async def reset_quota(
    org_id: str,
    body: Optional[QuotaResetRequest] = None,
    principal: AuthContext = Depends(get_user),
    authorization: Optional[str] = Header(None),
):
    _require_org_access(principal, org_id, admin=True)
    quota_type = body.quota_type if body is not None else None
    runtime = get_runtime()
    if not await runtime.quota.reset(org_id, quota_type, authorization):
        raise _http_error("server_error", "quota service rejected the reset", status_code=502)
    return Envelope(status="ok", data={"org_id": org_id, "quota_type": quota_type or "all"})
