from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set
from urllib.parse import quote

import httpx

from tenantauth.logging import get_logger
from tenantauth.service.errors import ValidationError
from tenantauth.storage.models import QUOTA_TYPES, UNLIMITED

logger = get_logger(__name__)


@dataclass
class QuotaStatus:
    allowed: bool
    limit: int
    used: int
    remaining: int
    unlimited: bool = False
    reset_at: Optional[str] = None

    @classmethod
    def fail_open(cls) -> "QuotaStatus":
        return cls(
            allowed=True,
            limit=UNLIMITED,
            used=0,
            remaining=UNLIMITED,
            unlimited=True,
            reset_at=datetime.now(timezone.utc).isoformat(),
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "QuotaStatus":
        return cls(
            allowed=bool(payload["allowed"]),
            limit=int(payload["limit"]),
            used=int(payload.get("used", 0)),
            remaining=int(payload.get("remaining", UNLIMITED)),
            unlimited=bool(payload.get("unlimited", False)),
            reset_at=payload.get("resetAt"),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


class QuotaClient:
    """Client for the external quota service.

    Quota checks fail open: an unreachable or misbehaving quota service must
    never block a request, so every failure yields an unlimited result.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        bypass_org_id: str = "system",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.bypass_org_id = bypass_org_id
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._pending: Set[asyncio.Task] = set()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    @staticmethod
    def _headers(org_id: str, authorization: Optional[str]) -> Dict[str, str]:
        headers = {"x-org-id": org_id}
        if authorization:
            headers["Authorization"] = authorization
        return headers

    @staticmethod
    def _require_known_type(quota_type: str) -> None:
        if quota_type not in QUOTA_TYPES:
            raise ValidationError(
                f"unknown quota type '{quota_type}'",
                detail={"allowed": list(QUOTA_TYPES)},
            )

    async def check(
        self, org_id: str, quota_type: str, authorization: Optional[str] = None
    ) -> QuotaStatus:
        self._require_known_type(quota_type)
        if org_id == self.bypass_org_id:
            return QuotaStatus(
                allowed=True, limit=UNLIMITED, used=0, remaining=UNLIMITED, unlimited=True
            )

        path = f"/quotas/{quote(org_id, safe='')}/{quote(quota_type, safe='')}"
        try:
            client = await self._get_client()
            response = await client.get(path, headers=self._headers(org_id, authorization))
        except httpx.HTTPError as exc:
            logger.warning(
                "quota_check_unavailable",
                org_id=org_id,
                quota_type=quota_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return QuotaStatus.fail_open()

        if response.status_code != 200:
            logger.warning(
                "quota_check_failed",
                org_id=org_id,
                quota_type=quota_type,
                status_code=response.status_code,
            )
            return QuotaStatus.fail_open()
        try:
            body = response.json()
            if not body.get("success"):
                raise ValueError("quota service reported failure")
            return QuotaStatus.from_payload(body["data"]["status"])
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning(
                "quota_check_bad_response",
                org_id=org_id,
                quota_type=quota_type,
                error=str(exc),
            )
            return QuotaStatus.fail_open()

    def increment(
        self,
        org_id: str,
        quota_type: str,
        amount: int = 1,
        authorization: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """Schedule a usage increment without waiting for the quota service.

        Must be called from a running event loop. Failures are logged and never
        reach the caller. Returns the scheduled task, or None for the bypass
        organization.
        """
        self._require_known_type(quota_type)
        if amount < 1:
            raise ValidationError("increment amount must be positive")
        if org_id == self.bypass_org_id:
            return None
        task = asyncio.create_task(
            self._send_increment(org_id, quota_type, amount, authorization)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send_increment(
        self, org_id: str, quota_type: str, amount: int, authorization: Optional[str]
    ) -> None:
        try:
            client = await self._get_client()
            response = await client.post(
                f"/quotas/{quote(org_id, safe='')}/increment",
                json={"quotaType": quota_type, "amount": amount},
                headers=self._headers(org_id, authorization),
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "quota_increment_unavailable",
                org_id=org_id,
                quota_type=quota_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if response.status_code != 200:
            logger.warning(
                "quota_increment_failed",
                org_id=org_id,
                quota_type=quota_type,
                amount=amount,
                status_code=response.status_code,
            )
            return
        logger.debug("quota_incremented", org_id=org_id, quota_type=quota_type, amount=amount)

    async def update_limits(
        self,
        org_id: str,
        limits: Dict[str, int],
        authorization: Optional[str] = None,
    ) -> bool:
        unknown = set(limits) - set(QUOTA_TYPES)
        if unknown:
            raise ValidationError(
                "unknown quota types", detail={"unknown": sorted(unknown)}
            )
        try:
            client = await self._get_client()
            response = await client.put(
                f"/quotas/{quote(org_id, safe='')}",
                json=limits,
                headers=self._headers(org_id, authorization),
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "quota_update_unavailable",
                org_id=org_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if response.status_code != 200:
            logger.warning(
                "quota_update_failed", org_id=org_id, status_code=response.status_code
            )
            return False
        logger.info("quota_limits_updated", org_id=org_id, limits=limits)
        return True

    async def reset(
        self,
        org_id: str,
        quota_type: Optional[str] = None,
        authorization: Optional[str] = None,
    ) -> bool:
        """Zero usage counters for one quota type, or all of them when omitted."""
        if quota_type is not None:
            self._require_known_type(quota_type)
        body = {"quotaType": quota_type} if quota_type else {}
        try:
            client = await self._get_client()
            response = await client.post(
                f"/quotas/{quote(org_id, safe='')}/reset",
                json=body,
                headers=self._headers(org_id, authorization),
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "quota_reset_unavailable",
                org_id=org_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if response.status_code != 200:
            logger.warning(
                "quota_reset_failed",
                org_id=org_id,
                quota_type=quota_type,
                status_code=response.status_code,
            )
            return False
        logger.info("quota_reset", org_id=org_id, quota_type=quota_type or "all")
        return True

    async def aclose(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()
            self._client = None
