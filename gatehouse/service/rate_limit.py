from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

from gatehouse.logging import get_logger
from gatehouse.storage.errors import StoreUnavailable
from gatehouse.storage.fast_store import FastStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        values = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            values["Retry-After"] = str(self.retry_after)
        return values


class FixedWindowRateLimiter:
    """INCR/EXPIRE counters per (key, window) pair; fails open on store errors."""

    def __init__(self, store: FastStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        if limit <= 0:
            return RateLimitResult(allowed=True, limit=limit, remaining=0, reset_at=now)
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        window_index = int(now // window_seconds)
        reset_at = float((window_index + 1) * window_seconds)
        counter_key = f"rate_limit:{key}:{window_index}"
        try:
            count = await self.store.incr(counter_key)
            if count == 1:
                await self.store.expire(counter_key, window_seconds)
        except StoreUnavailable as exc:
            logger.warning("rate_limit_check_failed", key=key, error=str(exc))
            return RateLimitResult(
                allowed=True, limit=limit, remaining=limit, reset_at=reset_at
            )
        allowed = count <= limit
        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            retry_after=0 if allowed else max(1, math.ceil(reset_at - now)),
        )
