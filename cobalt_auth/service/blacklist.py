from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from cobalt_auth.logging import get_logger
from cobalt_auth.service.clock import Clock, SystemClock, ensure_utc
from cobalt_auth.service.errors import infrastructure_error
from cobalt_auth.storage.base import EphemeralCache
from cobalt_auth.storage.errors import CacheError

logger = get_logger(__name__)


class AccessTokenBlacklist:
    """Early invalidation for access tokens, keyed by jti.

    Entries live exactly as long as the token they exclude would have been
    valid, so the cache never grows beyond the set of live access tokens.
    Lookups fail closed unless ``fail_open`` is set: a cache outage then
    surfaces as an infrastructure error rather than letting a revoked
    token through.
    """

    KEY_PREFIX = "blacklist:"

    def __init__(
        self,
        cache: EphemeralCache,
        *,
        clock: Optional[Clock] = None,
        fail_open: bool = False,
    ) -> None:
        self.cache = cache
        self.clock: Clock = clock or SystemClock()
        self.fail_open = fail_open

    def _key(self, token_id: str) -> str:
        return f"{self.KEY_PREFIX}{token_id}"

    async def add(self, token_id: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            # Token already past its natural expiry; nothing left to exclude
            return
        try:
            await self.cache.set_with_expiry(self._key(token_id), "1", ttl_seconds)
        except CacheError as exc:
            logger.error("blacklist_add_failed", token_id=token_id, error=exc.message)
            raise infrastructure_error(exc, "blacklist_add") from exc
        logger.info("access_token_blacklisted", token_id=token_id, ttl_seconds=ttl_seconds)

    async def add_until(self, token_id: str, expires_at: datetime) -> None:
        remaining = (ensure_utc(expires_at) - self.clock.now()).total_seconds()
        await self.add(token_id, math.ceil(remaining))

    async def contains(self, token_id: str) -> bool:
        try:
            return await self.cache.exists(self._key(token_id))
        except CacheError as exc:
            if self.fail_open:
                logger.warning("blacklist_check_failed_open", token_id=token_id, error=exc.message)
                return False
            logger.error("blacklist_check_failed", token_id=token_id, error=exc.message)
            raise infrastructure_error(exc, "blacklist_check") from exc


__all__ = ["AccessTokenBlacklist"]
