from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from cobalt_auth.logging import get_logger, sanitize_error_message
from cobalt_auth.storage.errors import CacheError, CacheTimeout

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed ephemeral state: rate-limit counters and the access-token blacklist."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR then EXPIRE on first hit, atomically, so a counter can never be left
    # without a TTL and concurrent callers never read-modify-write.
    _INCR_WITH_EXPIRY_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(
        self, redis_url: str, *, timeout_seconds: float = DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.timeout_seconds = timeout_seconds
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )
        self._incr_with_expiry = self.client.register_script(
            self._INCR_WITH_EXPIRY_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=self.timeout_seconds,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except (asyncio.TimeoutError, RedisTimeoutError) as exc:
            logger.warning("redis_timeout", operation=operation)
            raise CacheTimeout(
                f"{operation} timed out", {"timeout_seconds": self.timeout_seconds}
            ) from exc
        except RedisError as exc:
            logger.error(
                "redis_operation_failed",
                operation=operation,
                error=sanitize_error_message(str(exc)),
            )
            raise CacheError(f"{operation} failed") from exc

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        count = await self._call(
            "incr_with_expiry",
            self._incr_with_expiry(keys=[key], args=[max(1, int(ttl_seconds))]),
        )
        return int(count)

    async def get_count(self, key: str) -> int:
        raw = await self._call("get_count", self.client.get(key))
        return int(raw) if raw else 0

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        await self._call("set_with_expiry", self.client.set(key, value, ex=int(ttl_seconds)))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(key)))

    async def delete(self, key: str) -> None:
        await self._call("delete", self.client.delete(key))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
