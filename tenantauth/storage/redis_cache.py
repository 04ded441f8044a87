from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume. Returns {allowed, tokens_left, retry_after_seconds}.
TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local last = tonumber(state[2])
if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local retry_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(retry_after, 1))
  return {0, math.floor(tokens), retry_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, math.floor(tokens), 0}
"""


def rate_limit_key(key: str, namespace: Optional[str] = None) -> str:
    """Hash the subject so client-controlled values (IPs, identifiers) cannot collide on delimiters."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    prefix = f"{namespace}:" if namespace else ""
    return f"rate:{prefix}{digest}"


def _unpack(result) -> Tuple[bool, int, int]:
    allowed, tokens, retry_after = result
    return bool(int(allowed)), max(0, int(tokens)), int(retry_after or 0)


class RedisCache:
    """Redis-backed token bucket for auth endpoint rate limits."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        namespace: Optional[str] = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens; returns ``(allowed, remaining, retry_after)``."""
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[rate_limit_key(key, namespace)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(result)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Same contract as RedisCache over a synchronous client.

    Used under TEST_MODE so the TestClient's per-request event loops never
    share an async connection pool.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def ping(self) -> bool:
        return bool(self.client.ping())

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        namespace: Optional[str] = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[rate_limit_key(key, namespace)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack(result)

    async def close(self) -> None:
        self.client.close()
