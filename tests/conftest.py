import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any import that might build settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.config import Settings  # noqa: E402
from gatehouse.service.auth import AuthService  # noqa: E402
from gatehouse.service.cache import CacheService  # noqa: E402
from gatehouse.service.passwords import PasswordHasher  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.storage.errors import StoreUnavailable  # noqa: E402
from gatehouse.storage.memory import MemoryDatabase, MemoryFastStore  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"


class FakeClock:
    """Manually advanced epoch clock shared by a store and its services."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingFastStore:
    """FastStore whose every command fails like an unreachable Redis."""

    def __init__(self) -> None:
        self.calls = []

    def _fail(self, operation: str):
        self.calls.append(operation)
        raise StoreUnavailable("connection refused", operation=operation)

    async def get(self, key):
        self._fail("get")

    async def set(self, key, value, ttl_seconds=None):
        self._fail("set")

    async def delete(self, *keys):
        self._fail("delete")

    async def keys(self, pattern):
        self._fail("keys")

    async def sadd(self, key, *members):
        self._fail("sadd")

    async def srem(self, key, *members):
        self._fail("srem")

    async def smembers(self, key):
        self._fail("smembers")

    async def incr(self, key):
        self._fail("incr")

    async def expire(self, key, ttl_seconds):
        self._fail("expire")

    async def flush(self):
        self._fail("flush")

    async def ping(self):
        self._fail("ping")

    async def close(self):
        return None


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        password_hash_cost=1,
        password_hash_memory_kib=1024,
        password_hash_parallelism=1,
    )


@pytest.fixture
def store(clock):
    return MemoryFastStore(clock=clock)


@pytest.fixture
def failing_store():
    return FailingFastStore()


@pytest.fixture
def db():
    return MemoryDatabase()


@pytest.fixture
def hasher(settings):
    return PasswordHasher.from_settings(settings)


@pytest.fixture
def cache(store):
    return CacheService(store)


@pytest.fixture
def auth(db, store, settings, cache, hasher, clock):
    return AuthService.build(db, store, settings, cache=cache, hasher=hasher, clock=clock)


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
