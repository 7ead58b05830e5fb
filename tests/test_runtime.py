import asyncio
import importlib.util
from pathlib import Path

import pytest

from cobalt_auth.config import reset_settings_cache
from cobalt_auth.service import runtime as runtime_module
from cobalt_auth.service.runtime import (
    Runtime,
    _mask_url_password,
    get_runtime,
    reset_runtime_for_tests,
)
from cobalt_auth.storage.memory import MemoryStore
from cobalt_auth.storage.memory_cache import MemoryCache
from cobalt_auth.storage.redis_cache import RedisCache

ROOT = Path(__file__).resolve().parent.parent


def _load_script(name):
    spec = importlib.util.spec_from_file_location(name, ROOT / "scripts" / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestRuntime:
    def test_test_mode_uses_in_process_backends(self):
        runtime = get_runtime()
        assert isinstance(runtime.store, MemoryStore)
        assert isinstance(runtime.cache, MemoryCache)
        assert get_runtime() is runtime
        assert runtime.auth.store is runtime.store

    def test_reset_replaces_singleton(self):
        before = get_runtime()
        after = reset_runtime_for_tests()
        assert after is not before
        assert runtime_module.runtime is after

    async def test_reset_inside_event_loop_closes_redis_cache(self, monkeypatch):
        cache = RedisCache("redis://localhost:6379/0")
        closed = []

        async def close():
            closed.append(True)

        monkeypatch.setattr(cache, "close", close)
        get_runtime().cache = cache
        reset_runtime_for_tests()

        assert len(runtime_module._pending_closes) == 1
        await next(iter(runtime_module._pending_closes))
        assert closed == [True]
        assert not runtime_module._pending_closes

    def test_reset_refused_outside_test_mode(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")
        with pytest.raises(RuntimeError, match="TEST_MODE"):
            reset_runtime_for_tests()

    def test_redis_required_without_fallback(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
        monkeypatch.setenv("REDIS_URL", "")
        reset_settings_cache()
        with pytest.raises(RuntimeError, match="Redis is required"):
            Runtime()

    def test_dev_fallback_when_redis_unreachable(self, monkeypatch):
        monkeypatch.setenv("TEST_MODE", "false")
        monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "true")
        monkeypatch.setenv("REDIS_URL", "redis://127.0.0.1:1/0")
        monkeypatch.setenv("CACHE_TIMEOUT_SECONDS", "0.5")
        reset_settings_cache()
        runtime = Runtime()
        assert isinstance(runtime.cache, MemoryCache)

    def test_memory_store_path_persists_accounts(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MEMORY_STORE_PATH", str(tmp_path / "state.json"))
        first = reset_runtime_for_tests()
        user, _ = asyncio.run(
            first.auth.register("frank", "frank@example.com", "a long enough password")
        )
        second = reset_runtime_for_tests()
        assert second.store.get_user_by_username("frank").id == user.id


class TestMaskUrlPassword:
    def test_masks_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert (
            _mask_url_password("postgresql://app:hunter2@db:5432/cobalt")
            == "postgresql://app:***@db:5432/cobalt"
        )

    def test_leaves_plain_urls(self):
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None


class TestRevokeSessionsScript:
    async def test_revokes_by_identifier(self):
        script = _load_script("revoke_sessions")
        runtime = get_runtime()
        user, _ = await runtime.auth.register("gina", "gina@example.com", "a long enough password")
        await runtime.auth.rotation.issue(user.id, user.username)

        preview = await script.revoke_sessions(runtime, identifier="gina", dry_run=True)
        assert preview == {"user_id": user.id, "status": "dry_run", "revoked": 0}
        assert script.count_active_tokens(runtime.store, user.id, runtime.clock.now()) == 2

        result = await script.revoke_sessions(runtime, identifier="gina@example.com")
        assert result == {"user_id": user.id, "status": "revoked", "revoked": 2}
        assert script.count_active_tokens(runtime.store, user.id, runtime.clock.now()) == 0

    async def test_unknown_user(self):
        script = _load_script("revoke_sessions")
        result = await script.revoke_sessions(get_runtime(), user_id="missing")
        assert result["status"] == "not_found"
