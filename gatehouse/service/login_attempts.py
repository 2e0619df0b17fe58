from __future__ import annotations

import math
import time
from typing import Callable, List, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import RateLimitedError
from gatehouse.storage.errors import StoreUnavailable
from gatehouse.storage.fast_store import FastStore
from gatehouse.storage.models import LoginAttemptRecord

logger = get_logger(__name__)


class LoginAttemptTracker:
    """Sliding-window failed-login counters with temporary lockout.

    Each identity (an email or a client IP) has its own record, so a lockout
    on either one blocks the attempt. Store outages never block logins: the
    tracker logs the failure and lets the request through.
    """

    KEY_PREFIX = "login-attempt:"

    def __init__(
        self,
        store: FastStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_attempts = settings.max_login_attempts
        self.window_seconds = settings.login_attempt_window_seconds
        self._clock = clock

    @staticmethod
    def identities(email: str, ip_address: Optional[str] = None) -> List[str]:
        keys = [f"email:{email.strip().lower()}"]
        if ip_address:
            keys.append(f"ip:{ip_address}")
        return keys

    def _key(self, identity: str) -> str:
        return f"{self.KEY_PREFIX}{identity}"

    def _count_key(self, identity: str) -> str:
        return f"{self.KEY_PREFIX}{identity}:count"

    async def _load(self, identity: str) -> Optional[LoginAttemptRecord]:
        raw = await self.store.get(self._key(identity))
        if raw is None:
            return None
        try:
            return LoginAttemptRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("login_attempt_record_corrupt", identity=identity, error=str(exc))
            await self.store.delete(self._key(identity))
            return None

    async def _failure_count(self, identity: str) -> int:
        raw = await self.store.get(self._count_key(identity))
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            logger.warning("login_attempt_counter_corrupt", identity=identity)
            await self.store.delete(self._count_key(identity))
            return 0

    async def _lock(self, identity: str, count: int, now: float) -> None:
        record = LoginAttemptRecord(
            count=count, last_attempt=now, blocked_until=now + self.window_seconds
        )
        await self.store.set(self._key(identity), record.to_json(), self.window_seconds)
        # The lock record now carries the count; later failures start a new tally
        await self.store.delete(self._count_key(identity))
        logger.warning(
            "login_identity_locked",
            identity_kind=identity.split(":", 1)[0],
            attempts=count,
            locked_seconds=self.window_seconds,
        )

    async def check_allowed(self, identity: str) -> None:
        """Raise ``RateLimitedError`` while ``identity`` is locked out."""
        try:
            now = self._clock()
            record = await self._load(identity)
            if record is not None and record.blocked_until is not None:
                if record.blocked_until > now:
                    retry_after = max(1, math.ceil(record.blocked_until - now))
                    raise RateLimitedError(
                        f"Too many login attempts. Try again in {retry_after} seconds.",
                        retry_after=retry_after,
                    )
                # Lockout served; start over
                await self.store.delete(self._key(identity), self._count_key(identity))
                return
            count = await self._failure_count(identity)
            if count >= self.max_attempts:
                await self._lock(identity, count, now)
                raise RateLimitedError(
                    f"Account locked for {self.window_seconds // 60} minutes.",
                    retry_after=self.window_seconds,
                )
        except StoreUnavailable as exc:
            logger.warning("login_attempt_check_failed", error=str(exc))

    async def record_failure(self, identity: str) -> None:
        """Count a failed attempt and lock the identity once it hits the limit.

        The tally is an atomic store counter whose TTL is refreshed on every
        failure, so concurrent failures are never lost and a quiet window
        resets it.
        """
        try:
            count = await self.store.incr(self._count_key(identity))
            await self.store.expire(self._count_key(identity), self.window_seconds)
            if count >= self.max_attempts:
                await self._lock(identity, count, self._clock())
        except StoreUnavailable as exc:
            logger.warning("login_attempt_record_failed", error=str(exc))

    async def record_success(self, identity: str) -> None:
        try:
            await self.store.delete(self._key(identity), self._count_key(identity))
        except StoreUnavailable as exc:
            logger.warning("login_attempt_reset_failed", error=str(exc))
