"""Tests for the fixed-window request limiter."""

import pytest

from gatehouse.service.rate_limit import FixedWindowRateLimiter


@pytest.fixture
def limiter(store, clock):
    return FixedWindowRateLimiter(store, clock=clock)


class TestFixedWindow:
    async def test_counts_down_remaining(self, limiter):
        first = await limiter.hit("ip:1", 3, 60)
        second = await limiter.hit("ip:1", 3, 60)

        assert first.allowed and second.allowed
        assert (first.remaining, second.remaining) == (2, 1)

    async def test_blocks_over_limit(self, limiter):
        for _ in range(3):
            await limiter.hit("ip:1", 3, 60)

        blocked = await limiter.hit("ip:1", 3, 60)

        assert not blocked.allowed
        assert blocked.remaining == 0
        assert 0 < blocked.retry_after <= 60
        assert blocked.headers()["Retry-After"] == str(blocked.retry_after)

    async def test_next_window_resets(self, limiter, clock):
        for _ in range(4):
            await limiter.hit("ip:1", 3, 60)

        clock.advance(60)
        assert (await limiter.hit("ip:1", 3, 60)).allowed

    async def test_keys_are_independent(self, limiter):
        for _ in range(3):
            await limiter.hit("ip:1", 3, 60)
        assert (await limiter.hit("ip:2", 3, 60)).allowed

    async def test_headers_when_allowed(self, limiter):
        result = await limiter.hit("ip:1", 10, 60)
        headers = result.headers()

        assert headers["X-RateLimit-Limit"] == "10"
        assert headers["X-RateLimit-Remaining"] == "9"
        assert "Retry-After" not in headers

    async def test_fails_open(self, failing_store, clock):
        limiter = FixedWindowRateLimiter(failing_store, clock=clock)
        result = await limiter.hit("ip:1", 1, 60)
        assert result.allowed
