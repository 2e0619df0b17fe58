from __future__ import annotations

import fnmatch
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, TypeVar

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation, StoreUnavailable
from gatehouse.storage.models import (
    PaginatedResult,
    Post,
    QueryOptions,
    User,
    utcnow,
)

T = TypeVar("T")

_USER_UPDATABLE = {"name", "email", "password_hash"}
_POST_UPDATABLE = {"title", "content"}


class MemoryFastStore:
    """In-process FastStore with Redis-like TTL semantics.

    Used for tests and for local development when Redis is unavailable.
    Expiry is evaluated lazily against ``clock`` on every access.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Any] = {}
        self._deadlines: Dict[str, float] = {}
        self._lock = threading.RLock()

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._deadlines.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._deadlines.pop(key, None)

    def _live(self, key: str) -> Any:
        self._purge_if_expired(key)
        return self._data.get(key)

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, None when it has no deadline or is absent."""
        with self._lock:
            self._purge_if_expired(key)
            deadline = self._deadlines.get(key)
            if deadline is None:
                return None
            return deadline - self._clock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            if value is None:
                return None
            if isinstance(value, set):
                raise StoreUnavailable("wrong type for get", operation="get")
            return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._data[key] = str(value)
            if ttl_seconds is not None:
                self._deadlines[key] = self._clock() + max(1, int(ttl_seconds))
            else:
                self._deadlines.pop(key, None)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
                self._deadlines.pop(key, None)
        return removed

    async def keys(self, pattern: str) -> List[str]:
        with self._lock:
            for key in list(self._data):
                self._purge_if_expired(key)
            return [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]

    def _set_for(self, key: str, operation: str, *, create: bool) -> Optional[Set[str]]:
        value = self._live(key)
        if value is None:
            if not create:
                return None
            value = set()
            self._data[key] = value
        if not isinstance(value, set):
            raise StoreUnavailable(f"wrong type for {operation}", operation=operation)
        return value

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            members_set = self._set_for(key, "sadd", create=True)
            before = len(members_set)
            members_set.update(members)
            return len(members_set) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            members_set = self._set_for(key, "srem", create=False)
            if not members_set:
                return 0
            removed = len(members_set.intersection(members))
            members_set.difference_update(members)
            if not members_set:
                self._data.pop(key, None)
                self._deadlines.pop(key, None)
            return removed

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            members_set = self._set_for(key, "smembers", create=False)
            return set(members_set or ())

    async def incr(self, key: str) -> int:
        with self._lock:
            current = self._live(key)
            try:
                value = int(current) + 1 if current is not None else 1
            except (TypeError, ValueError) as exc:
                raise StoreUnavailable("value is not an integer", operation="incr") from exc
            self._data[key] = str(value)
            return value

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            self._deadlines[key] = self._clock() + max(1, int(ttl_seconds))
            return True

    async def flush(self) -> None:
        with self._lock:
            self._data.clear()
            self._deadlines.clear()

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class MemoryDatabase:
    """In-memory users/posts store standing in for the relational database."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.posts: Dict[str, Post] = {}
        self._data_lock = threading.RLock()

    # Users -----------------------------------------------------------------

    async def create_user(self, name: str, email: str, password_hash: str) -> User:
        with self._data_lock:
            if self._user_by_email(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(name=name, email=email, password_hash=password_hash)
            self.users[user.id] = user
            return replace(user)

    def _user_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        return next((u for u in self.users.values() if u.email.lower() == needle), None)

    async def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._user_by_email(email)
            return replace(user) if user else None

    async def update_user(self, user_id: str, **changes: Any) -> Optional[User]:
        unknown = set(changes) - _USER_UPDATABLE
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = changes.get("email")
            if new_email:
                clash = self._user_by_email(new_email)
                if clash and clash.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for name, value in changes.items():
                if value is not None:
                    setattr(user, name, value)
            user.updated_at = utcnow()
            return replace(user)

    async def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            for post_id in [p.id for p in self.posts.values() if p.user_id == user_id]:
                self.posts.pop(post_id, None)
            return True

    async def get_all_users(
        self, options: Optional[QueryOptions] = None
    ) -> PaginatedResult[User]:
        options = options or QueryOptions()
        with self._data_lock:
            rows = list(self.users.values())
            if options.search:
                term = options.search.lower()
                rows = [u for u in rows if term in u.name.lower() or term in u.email.lower()]
            return _paginate(rows, options)

    # Posts -----------------------------------------------------------------

    async def create_post(self, title: str, content: str, user_id: str) -> Post:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("author does not exist", {"field": "user_id"})
            post = Post.new(title=title, content=content, user_id=user_id)
            self.posts[post.id] = post
            return replace(post)

    async def find_post_by_id(self, post_id: str) -> Optional[Post]:
        with self._data_lock:
            post = self.posts.get(post_id)
            return replace(post) if post else None

    async def update_post(self, post_id: str, user_id: str, **changes: Any) -> Optional[Post]:
        unknown = set(changes) - _POST_UPDATABLE
        if unknown:
            raise ValueError(f"unsupported post fields: {sorted(unknown)}")
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post or post.user_id != user_id:
                return None
            for name, value in changes.items():
                if value is not None:
                    setattr(post, name, value)
            post.updated_at = utcnow()
            return replace(post)

    async def delete_post(self, post_id: str, user_id: str) -> bool:
        with self._data_lock:
            post = self.posts.get(post_id)
            if not post or post.user_id != user_id:
                return False
            self.posts.pop(post_id, None)
            return True

    async def get_all_posts(
        self, options: Optional[QueryOptions] = None
    ) -> PaginatedResult[Post]:
        return self._query_posts(None, options or QueryOptions())

    async def get_posts_by_user(
        self, user_id: str, options: Optional[QueryOptions] = None
    ) -> PaginatedResult[Post]:
        return self._query_posts(user_id, options or QueryOptions())

    def _query_posts(self, user_id: Optional[str], options: QueryOptions) -> PaginatedResult[Post]:
        with self._data_lock:
            rows = [p for p in self.posts.values() if not user_id or p.user_id == user_id]
            if options.search:
                term = options.search.lower()
                rows = [
                    p for p in rows if term in p.title.lower() or term in p.content.lower()
                ]
            return _paginate(rows, options)


def _sorted_rows(rows: Iterable[T], options: QueryOptions) -> List[T]:
    ordered = list(rows)
    if not options.sort_by:
        return sorted(ordered, key=lambda r: getattr(r, "created_at"), reverse=True)
    # Stable sorts applied last-key-first give multi-column ordering
    for sort in reversed(options.sort_by):
        ordered.sort(
            key=lambda r, col=sort.column: getattr(r, col),
            reverse=sort.order == "desc",
        )
    return ordered


def _paginate(rows: List[T], options: QueryOptions) -> PaginatedResult[T]:
    page = max(1, options.page)
    limit = max(1, options.limit)
    ordered = _sorted_rows(rows, options)
    start = (page - 1) * limit
    return PaginatedResult(
        data=[replace(r) for r in ordered[start : start + limit]],
        total=len(ordered),
        page=page,
        limit=limit,
    )


__all__ = ["MemoryDatabase", "MemoryFastStore"]
