from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis

_DENYLIST_PREFIX = "auth:access:denylist:"
_REFRESH_COUNTER_PREFIX = "security:token_refresh:"


class RedisCache:
    """Thin Redis wrapper for the access-token denylist and refresh counters."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # throwaway event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def denylist_access_token(self, key: str, ttl_ms: int) -> None:
        """Deny an access token until its natural expiry; the TTL does the purge."""
        if ttl_ms > 0:
            await self.client.set(f"{_DENYLIST_PREFIX}{key}", "1", px=ttl_ms)

    async def is_access_token_denylisted(self, key: str) -> bool:
        return bool(await self.client.exists(f"{_DENYLIST_PREFIX}{key}"))

    async def count_refresh(self, subject: str, window_seconds: int = 60) -> int:
        """Increment and return the subject's refresh count for the current window."""
        key = f"{_REFRESH_COUNTER_PREFIX}{subject}"
        count = int(await self.client.incr(key))
        if count == 1:
            await self.client.expire(key, window_seconds)
        return count

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable surface as ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def denylist_access_token(self, key: str, ttl_ms: int) -> None:
        if ttl_ms > 0:
            self._sync_client.set(f"{_DENYLIST_PREFIX}{key}", "1", px=ttl_ms)

    async def is_access_token_denylisted(self, key: str) -> bool:
        return bool(self._sync_client.exists(f"{_DENYLIST_PREFIX}{key}"))

    async def count_refresh(self, subject: str, window_seconds: int = 60) -> int:
        key = f"{_REFRESH_COUNTER_PREFIX}{subject}"
        count = int(self._sync_client.incr(key))
        if count == 1:
            self._sync_client.expire(key, window_seconds)
        return count

    async def close(self) -> None:
        self._sync_client.close()
