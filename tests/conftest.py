import asyncio
import inspect
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

# Seed the environment before anything imports settings or builds the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("ARGON2_MEMORY_COST_KIB", "1024")
os.environ.setdefault("ARGON2_TIME_COST", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from cobalt_auth.config import Settings  # noqa: E402
from cobalt_auth.service.auth import AuthService  # noqa: E402
from cobalt_auth.service.clock import ManualClock  # noqa: E402
from cobalt_auth.service.passwords import PASSWORD_ALGO  # noqa: E402
from cobalt_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from cobalt_auth.service.tokens import TokenCodec, TokenConfig  # noqa: E402
from cobalt_auth.storage.memory import MemoryStore  # noqa: E402
from cobalt_auth.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
TEST_PASSWORD = "correct horse battery"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    """Settings with cheap Argon2 parameters so tests stay fast."""
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        access_token_ttl_minutes=15,
        refresh_token_ttl_days=7,
        argon2_memory_cost_kib=1024,
        argon2_time_cost=1,
        login_rate_limit=5,
        login_rate_window_seconds=900,
    )


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(TokenConfig.from_settings(settings), clock=clock)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def auth_service(memory_store, memory_cache, settings, clock):
    return AuthService(memory_store, memory_cache, settings, clock=clock)


@pytest.fixture
def user_password():
    return TEST_PASSWORD


@pytest.fixture
def test_user(memory_store, auth_service):
    """A user ``alice`` with password ``TEST_PASSWORD``."""
    user = memory_store.create_user("alice", "alice@example.com")
    memory_store.save_password(
        user.id, auth_service.verifier.hash(TEST_PASSWORD), PASSWORD_ALGO
    )
    return user


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
