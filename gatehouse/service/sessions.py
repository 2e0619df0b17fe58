from __future__ import annotations

import secrets
import time
from dataclasses import replace
from typing import Callable, List, Optional

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.errors import store_errors
from gatehouse.storage.fast_store import FastStore
from gatehouse.storage.models import PublicUser, SessionRecord, User

logger = get_logger(__name__)


class SessionStore:
    """Session records in the fast store plus a per-user index of session ids.

    ``session:<id>`` holds the JSON record with a sliding TTL and
    ``user_sessions:<user_id>`` is a set of ids. The two keys are written
    separately, so the index may briefly name a session that has already
    expired; readers prune such entries as they find them.
    """

    def __init__(
        self,
        store: FastStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ttl_seconds = settings.session_ttl_seconds
        self._clock = clock

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"user_sessions:{user_id}"

    async def _read(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.store.get(self._session_key(session_id))
        if raw is None:
            return None
        try:
            return SessionRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            await self.store.delete(self._session_key(session_id))
            return None

    async def create(
        self,
        user: User | PublicUser,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionRecord:
        now = self._clock()
        record = SessionRecord(
            session_id=secrets.token_urlsafe(32),
            user_id=user.id,
            email=user.email,
            login_time=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        with store_errors("session_create"):
            await self.store.set(
                self._session_key(record.session_id), record.to_json(), self.ttl_seconds
            )
            await self.store.sadd(self._index_key(user.id), record.session_id)
            await self.store.expire(self._index_key(user.id), self.ttl_seconds)
        logger.info("session_created", session_id=record.session_id, user_id=user.id)
        return record

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Fetch a live record without extending it."""
        with store_errors("session_get"):
            record = await self._read(session_id)
        if record and record.last_activity + self.ttl_seconds < self._clock():
            return None
        return record

    async def verify(self, session_id: str) -> Optional[SessionRecord]:
        """Return the live record and slide its expiry forward."""
        with store_errors("session_verify"):
            record = await self._read(session_id)
            if record is None:
                return None
            now = self._clock()
            # The store TTL should already have dropped it; checked anyway
            if record.last_activity + self.ttl_seconds < now:
                await self.store.delete(self._session_key(session_id))
                await self.store.srem(self._index_key(record.user_id), session_id)
                return None
            record.last_activity = now
            await self.store.set(
                self._session_key(session_id), record.to_json(), self.ttl_seconds
            )
            await self.store.expire(self._index_key(record.user_id), self.ttl_seconds)
        return record

    async def revoke(self, session_id: str, user_id: str) -> bool:
        with store_errors("session_revoke"):
            removed = await self.store.delete(self._session_key(session_id))
            await self.store.srem(self._index_key(user_id), session_id)
        if removed:
            logger.info("session_revoked", session_id=session_id, user_id=user_id)
        return removed > 0

    async def revoke_all_except(self, current_session_id: Optional[str], user_id: str) -> int:
        revoked = 0
        with store_errors("session_revoke_all_except"):
            session_ids = await self.store.smembers(self._index_key(user_id))
            for session_id in session_ids:
                if session_id == current_session_id:
                    continue
                # Deleting a stale id yields 0 but still prunes the index
                revoked += await self.store.delete(self._session_key(session_id))
                await self.store.srem(self._index_key(user_id), session_id)
        logger.info(
            "sessions_revoked",
            user_id=user_id,
            revoked=revoked,
            kept_session_id=current_session_id,
        )
        return revoked

    async def revoke_all(self, user_id: str) -> int:
        revoked = await self.revoke_all_except(None, user_id)
        with store_errors("session_revoke_all"):
            await self.store.delete(self._index_key(user_id))
        return revoked

    async def list_active(
        self, user_id: str, current_session_id: Optional[str] = None
    ) -> List[SessionRecord]:
        active: List[SessionRecord] = []
        stale: List[str] = []
        now = self._clock()
        with store_errors("session_list_active"):
            session_ids = await self.store.smembers(self._index_key(user_id))
            for session_id in session_ids:
                record = await self._read(session_id)
                if (
                    record is None
                    or record.user_id != user_id
                    or record.last_activity + self.ttl_seconds < now
                ):
                    stale.append(session_id)
                    continue
                active.append(
                    replace(record, is_current=session_id == current_session_id)
                )
            if stale:
                await self.store.srem(self._index_key(user_id), *stale)
                logger.debug("session_index_pruned", user_id=user_id, pruned=len(stale))
        active.sort(key=lambda r: r.login_time, reverse=True)
        return active
