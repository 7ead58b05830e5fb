from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from cobalt_auth.service.clock import Clock, SystemClock


class MemoryCache:
    """In-process stand-in for Redis, used in tests and dev fallback.

    Entries expire against the injected clock. The lock is held only for
    dictionary access, never across an await.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or SystemClock()
        self._entries: Dict[str, Tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str, now: datetime) -> Optional[Tuple[str, datetime]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            self._entries.pop(key, None)
            return None
        return entry

    def _sweep(self, now: datetime) -> None:
        stale = [k for k, (_, exp) in self._entries.items() if exp <= now]
        for key in stale:
            self._entries.pop(key, None)

    async def incr_with_expiry(self, key: str, ttl_seconds: int) -> int:
        now = self.clock.now()
        with self._lock:
            entry = self._live(key, now)
            if entry is None:
                if len(self._entries) > 10000:
                    self._sweep(now)
                expires_at = now + timedelta(seconds=max(1, int(ttl_seconds)))
                self._entries[key] = ("1", expires_at)
                return 1
            count = int(entry[0]) + 1
            self._entries[key] = (str(count), entry[1])
            return count

    async def get_count(self, key: str) -> int:
        with self._lock:
            entry = self._live(key, self.clock.now())
            return int(entry[0]) if entry else 0

    async def set_with_expiry(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        now = self.clock.now()
        with self._lock:
            self._entries[key] = (value, now + timedelta(seconds=int(ttl_seconds)))

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key, self.clock.now()) is not None

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()


__all__ = ["MemoryCache"]
