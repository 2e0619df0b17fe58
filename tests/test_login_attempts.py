"""Tests for failed-login counting and temporary lockout."""

import asyncio

import pytest

from gatehouse.service.errors import RateLimitedError
from gatehouse.service.login_attempts import LoginAttemptTracker
from gatehouse.storage.memory import MemoryFastStore


class YieldingStore(MemoryFastStore):
    """Suspends on every command, the way a network round-trip does."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value, ttl_seconds=None):
        await asyncio.sleep(0)
        await super().set(key, value, ttl_seconds)

    async def incr(self, key):
        await asyncio.sleep(0)
        return await super().incr(key)

    async def expire(self, key, ttl_seconds):
        await asyncio.sleep(0)
        return await super().expire(key, ttl_seconds)


@pytest.fixture
def tracker(store, settings, clock):
    return LoginAttemptTracker(store, settings, clock=clock)


async def _fail(tracker, identity, times):
    for _ in range(times):
        await tracker.record_failure(identity)


class TestLockout:
    async def test_fresh_identity_allowed(self, tracker):
        await tracker.check_allowed("email:new@example.com")

    async def test_below_threshold_allowed(self, tracker):
        await _fail(tracker, "email:a@example.com", 4)
        await tracker.check_allowed("email:a@example.com")

    async def test_threshold_locks_for_window(self, tracker):
        await _fail(tracker, "email:a@example.com", 5)

        with pytest.raises(RateLimitedError) as excinfo:
            await tracker.check_allowed("email:a@example.com")
        assert excinfo.value.retry_after == 900
        assert excinfo.value.status_code == 429

    async def test_locked_identity_reports_remaining_time(self, tracker, clock):
        await _fail(tracker, "email:a@example.com", 5)
        with pytest.raises(RateLimitedError):
            await tracker.check_allowed("email:a@example.com")

        clock.advance(300)
        with pytest.raises(RateLimitedError) as excinfo:
            await tracker.check_allowed("email:a@example.com")
        assert excinfo.value.retry_after == 600

    async def test_lockout_lifts_after_window(self, tracker, clock):
        await _fail(tracker, "email:a@example.com", 5)
        with pytest.raises(RateLimitedError):
            await tracker.check_allowed("email:a@example.com")

        clock.advance(901)
        await tracker.check_allowed("email:a@example.com")

    async def test_identities_are_independent(self, tracker):
        await _fail(tracker, "email:a@example.com", 5)
        with pytest.raises(RateLimitedError):
            await tracker.check_allowed("email:a@example.com")

        await tracker.check_allowed("email:b@example.com")
        await tracker.check_allowed("ip:10.0.0.1")


class TestCounting:
    async def test_success_resets_counter(self, tracker):
        await _fail(tracker, "email:a@example.com", 4)
        await tracker.record_success("email:a@example.com")
        await _fail(tracker, "email:a@example.com", 4)

        await tracker.check_allowed("email:a@example.com")

    async def test_stale_failures_do_not_accumulate(self, tracker, clock):
        await _fail(tracker, "email:a@example.com", 4)
        clock.advance(901)
        await _fail(tracker, "email:a@example.com", 4)

        await tracker.check_allowed("email:a@example.com")

    async def test_corrupt_record_is_discarded(self, tracker, store):
        await store.set("login-attempt:email:a@example.com", "{not json")

        await tracker.check_allowed("email:a@example.com")
        assert await store.get("login-attempt:email:a@example.com") is None

    def test_identities(self):
        assert LoginAttemptTracker.identities(" A@Example.com ", "10.0.0.1") == [
            "email:a@example.com",
            "ip:10.0.0.1",
        ]
        assert LoginAttemptTracker.identities("a@example.com") == ["email:a@example.com"]


class TestStoreOutage:
    async def test_fails_open(self, failing_store, settings, clock):
        tracker = LoginAttemptTracker(failing_store, settings, clock=clock)

        await tracker.record_failure("email:a@example.com")
        await tracker.check_allowed("email:a@example.com")
        await tracker.record_success("email:a@example.com")
        assert failing_store.calls


class TestConcurrentFailures:
    async def test_parallel_burst_is_fully_counted(self, settings, clock):
        tracker = LoginAttemptTracker(YieldingStore(clock=clock), settings, clock=clock)

        async def attempt():
            await tracker.check_allowed("email:a@example.com")
            await tracker.record_failure("email:a@example.com")

        results = await asyncio.gather(
            *(attempt() for _ in range(20)), return_exceptions=True
        )
        assert all(r is None or isinstance(r, RateLimitedError) for r in results)

        with pytest.raises(RateLimitedError) as excinfo:
            await tracker.check_allowed("email:a@example.com")
        assert excinfo.value.retry_after == 900

    async def test_counter_is_a_store_counter(self, tracker, store):
        await _fail(tracker, "email:a@example.com", 3)
        assert await store.get("login-attempt:email:a@example.com:count") == "3"
        assert store.ttl("login-attempt:email:a@example.com:count") == 900
