from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from cobalt_auth.config import get_settings, reset_settings_cache
from cobalt_auth.logging import get_logger
from cobalt_auth.service.auth import AuthService
from cobalt_auth.service.clock import Clock, SystemClock
from cobalt_auth.storage.memory import MemoryStore
from cobalt_auth.storage.memory_cache import MemoryCache
from cobalt_auth.storage.postgres import PostgresStore
from cobalt_auth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_pending_closes: set[asyncio.Task] = set()


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store, cache and auth service shared by request handlers."""

    def __init__(self, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock: Clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(state_path=self.settings.memory_store_path)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                    retry_attempts=self.settings.store_retry_attempts,
                    ensure_schema=self.settings.postgres_ensure_schema,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    timeout_seconds=self.settings.cache_timeout_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the access-token blacklist; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_not_used",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and the "
                    "blacklist are per-process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache(clock=self.clock)

        self.auth = AuthService(self.store, self.cache, self.settings, clock=self.clock)
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            rate_limit_scope=self.settings.rate_limit_scope.value,
            escalate_on_refresh_reuse=self.settings.escalate_on_refresh_reuse,
        )

    async def aclose(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(clock: Optional[Clock] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime
    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.cache.close())
            else:
                # The loop only keeps weak references to tasks
                task = loop.create_task(runtime.cache.close())
                _pending_closes.add(task)
                task.add_done_callback(_pending_closes.discard)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
