from datetime import timedelta

import pytest

from cobalt_auth.service.blacklist import AccessTokenBlacklist
from cobalt_auth.service.errors import InfrastructureError, InfrastructureTimeout
from cobalt_auth.storage.errors import CacheError, CacheTimeout


class FailingCache:
    def __init__(self, exc):
        self.exc = exc

    async def set_with_expiry(self, key, value, ttl_seconds):
        raise self.exc

    async def exists(self, key):
        raise self.exc


@pytest.fixture
def blacklist(memory_cache, clock):
    return AccessTokenBlacklist(memory_cache, clock=clock)


class TestBlacklist:
    async def test_add_and_contains(self, blacklist, memory_cache):
        await blacklist.add("jti-1", 60)
        assert await blacklist.contains("jti-1")
        assert not await blacklist.contains("jti-2")
        assert await memory_cache.exists("blacklist:jti-1")

    async def test_entry_expires(self, blacklist, clock):
        await blacklist.add("jti-1", 60)
        clock.advance(59)
        assert await blacklist.contains("jti-1")
        clock.advance(1)
        assert not await blacklist.contains("jti-1")

    async def test_non_positive_ttl_is_noop(self, blacklist):
        await blacklist.add("jti-1", 0)
        await blacklist.add("jti-2", -5)
        assert not await blacklist.contains("jti-1")
        assert not await blacklist.contains("jti-2")

    async def test_add_until_rounds_up(self, blacklist, clock):
        await blacklist.add_until("jti-1", clock.now() + timedelta(seconds=10, milliseconds=200))
        clock.advance(10.5)
        assert await blacklist.contains("jti-1")
        clock.advance(0.5)
        assert not await blacklist.contains("jti-1")

    async def test_add_until_past_expiry_is_noop(self, blacklist, clock):
        await blacklist.add_until("jti-1", clock.now() - timedelta(seconds=1))
        assert not await blacklist.contains("jti-1")


class TestFailureModes:
    async def test_fails_closed_by_default(self, clock):
        blacklist = AccessTokenBlacklist(FailingCache(CacheError("down")), clock=clock)
        with pytest.raises(InfrastructureError):
            await blacklist.contains("jti-1")

    async def test_timeout_maps_to_infrastructure_timeout(self, clock):
        blacklist = AccessTokenBlacklist(FailingCache(CacheTimeout("slow")), clock=clock)
        with pytest.raises(InfrastructureTimeout):
            await blacklist.contains("jti-1")

    async def test_fail_open_allows_lookup(self, clock):
        blacklist = AccessTokenBlacklist(
            FailingCache(CacheError("down")), clock=clock, fail_open=True
        )
        assert await blacklist.contains("jti-1") is False

    async def test_add_failure_always_raises(self, clock):
        blacklist = AccessTokenBlacklist(
            FailingCache(CacheError("down")), clock=clock, fail_open=True
        )
        with pytest.raises(InfrastructureError) as excinfo:
            await blacklist.add("jti-1", 30)
        assert isinstance(excinfo.value.__cause__, CacheError)
