"""Fixed-window request throttling for authentication entry points.

Each (bucket, scope, window) triple maps to one cache counter that is
incremented atomically and expires with its window, so there is no
check-then-increment race and no cleanup job. The scope defaults to the
client's network origin; ``origin_account_scope`` additionally keys on the
submitted account so one user cannot lock out a shared-NAT population.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Callable, Optional

from cobalt_auth.config import RateLimitScope, Settings
from cobalt_auth.logging import get_logger
from cobalt_auth.service.clock import Clock, SystemClock
from cobalt_auth.service.errors import RateLimitedError, infrastructure_error
from cobalt_auth.storage.base import EphemeralCache
from cobalt_auth.storage.errors import CacheError

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60

ScopeKeyFn = Callable[[str, Optional[str]], str]


def origin_scope(origin: str, account: Optional[str] = None) -> str:
    return origin or "unknown"


def origin_account_scope(origin: str, account: Optional[str] = None) -> str:
    return f"{origin or 'unknown'}|{(account or '').strip().lower()}"


def scope_fn_for(scope: RateLimitScope) -> ScopeKeyFn:
    if scope == RateLimitScope.ORIGIN_ACCOUNT:
        return origin_account_scope
    return origin_scope


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class RateLimiter:
    def __init__(
        self,
        cache: EphemeralCache,
        *,
        clock: Optional[Clock] = None,
        scope_fn: ScopeKeyFn = origin_scope,
    ) -> None:
        self.cache = cache
        self.clock: Clock = clock or SystemClock()
        self.scope_fn = scope_fn

    @classmethod
    def from_settings(
        cls, cache: EphemeralCache, settings: Settings, *, clock: Optional[Clock] = None
    ) -> "RateLimiter":
        return cls(cache, clock=clock, scope_fn=scope_fn_for(settings.rate_limit_scope))

    def scope_key(self, origin: str, account: Optional[str] = None) -> str:
        return self.scope_fn(origin, account)

    @property
    def keys_on_account(self) -> bool:
        """True when a counter belongs to a single account at a single origin."""
        return self.scope_fn is origin_account_scope

    def _normalize_window(self, window: int) -> int:
        if window <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                window_seconds=window,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            return DEFAULT_WINDOW_SECONDS
        return int(window)

    def _window_bounds(self, window: int) -> tuple[int, float]:
        now_ts = self.clock.now().timestamp()
        index = int(now_ts // window)
        window_end = (index + 1) * window
        return index, window_end - now_ts

    @staticmethod
    def _key(bucket: str, scope_key: str, index: int) -> str:
        # Hash the scope so client-controlled values cannot inject delimiters
        digest = hashlib.sha256(scope_key.encode("utf-8")).hexdigest()
        return f"ratelimit:{bucket}:{digest}:{index}"

    async def check_and_increment(
        self, scope_key: str, limit: int, window: int, *, bucket: str = "login"
    ) -> RateLimitDecision:
        if limit <= 0:
            return RateLimitDecision(allowed=True, count=0, limit=limit)
        window = self._normalize_window(window)
        index, seconds_left = self._window_bounds(window)
        key = self._key(bucket, scope_key, index)
        try:
            count = await self.cache.incr_with_expiry(key, math.ceil(seconds_left) + 1)
        except CacheError as exc:
            logger.error("rate_limit_check_failed", bucket=bucket, error=exc.message)
            raise infrastructure_error(exc, "rate_limit_check") from exc
        if count <= limit:
            return RateLimitDecision(allowed=True, count=count, limit=limit)
        retry_after = max(1, math.ceil(seconds_left))
        logger.info(
            "rate_limit_denied",
            bucket=bucket,
            count=count,
            limit=limit,
            retry_after=retry_after,
        )
        return RateLimitDecision(
            allowed=False, count=count, limit=limit, retry_after=retry_after
        )

    async def enforce(
        self, scope_key: str, limit: int, window: int, *, bucket: str = "login"
    ) -> RateLimitDecision:
        decision = await self.check_and_increment(scope_key, limit, window, bucket=bucket)
        if not decision.allowed:
            raise RateLimitedError(retry_after=decision.retry_after)
        return decision

    async def reset(self, scope_key: str, window: int, *, bucket: str = "login") -> None:
        window = self._normalize_window(window)
        index, _ = self._window_bounds(window)
        try:
            await self.cache.delete(self._key(bucket, scope_key, index))
        except CacheError as exc:
            raise infrastructure_error(exc, "rate_limit_reset") from exc

    async def attempt_count(
        self, scope_key: str, window: int, *, bucket: str = "login"
    ) -> int:
        window = self._normalize_window(window)
        index, _ = self._window_bounds(window)
        try:
            return await self.cache.get_count(self._key(bucket, scope_key, index))
        except CacheError as exc:
            raise infrastructure_error(exc, "rate_limit_count") from exc


__all__ = [
    "RateLimitDecision",
    "RateLimiter",
    "origin_account_scope",
    "origin_scope",
    "scope_fn_for",
]
