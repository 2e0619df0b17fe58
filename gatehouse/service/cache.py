from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Iterable, List, Optional, TypeVar

from pydantic_core import to_jsonable_python

from gatehouse.logging import get_logger
from gatehouse.storage.errors import StoreUnavailable
from gatehouse.storage.fast_store import FastStore
from gatehouse.storage.models import QueryOptions

logger = get_logger(__name__)

T = TypeVar("T")


def build_cache_key(prefix: str, options: Optional[QueryOptions] = None, **extra: Any) -> str:
    """Deterministic key for a paginated/searchable listing.

    ``build_cache_key("users", QueryOptions(page=2))`` gives
    ``users:page:2:limit:10:search::sort:``; keyword extras are appended in
    sorted order so argument order never changes the key.
    """
    options = options or QueryOptions()
    sort = ",".join(f"{s.column}:{s.order}" for s in options.sort_by)
    parts = [
        prefix,
        f"page:{options.page or 1}",
        f"limit:{options.limit or 10}",
        f"search:{options.search or ''}",
        f"sort:{sort}",
    ]
    for name in sorted(extra):
        value = extra[name]
        parts.append(f"{name}:{'' if value is None else value}")
    return ":".join(parts)


class CacheService:
    """Cache-aside helper over the fast store.

    Logical keys (``users:...``, ``user:<id>``) live under ``<namespace>:`` in
    the store so clearing the cache never touches sessions or login-attempt
    records. Every failure is logged and swallowed: a cold cache is always a
    correct cache.

    There is no stampede protection; concurrent misses on the same key may
    each run the producer.
    """

    def __init__(
        self,
        store: FastStore,
        *,
        default_ttl: int = 3600,
        namespace: str = "cache",
    ) -> None:
        self.store = store
        self.default_ttl = default_ttl
        self.namespace = namespace

    def _k(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.store.get(self._k(key))
        except StoreUnavailable as exc:
            logger.warning("cache_get_failed", key=key, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("cache_entry_corrupt", key=key, error=str(exc))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            serialized = json.dumps(to_jsonable_python(value), separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            logger.warning("cache_serialize_failed", key=key, error=str(exc))
            return
        try:
            await self.store.set(self._k(key), serialized, ttl or self.default_ttl)
        except StoreUnavailable as exc:
            logger.warning("cache_set_failed", key=key, error=str(exc))

    async def delete(self, key: str) -> None:
        try:
            await self.store.delete(self._k(key))
        except StoreUnavailable as exc:
            logger.warning("cache_delete_failed", key=key, error=str(exc))

    async def delete_pattern(self, pattern: str) -> int:
        try:
            keys = await self.store.keys(self._k(pattern))
            if not keys:
                return 0
            return await self.store.delete(*keys)
        except StoreUnavailable as exc:
            logger.warning("cache_delete_pattern_failed", pattern=pattern, error=str(exc))
            return 0

    async def clear(self) -> int:
        return await self.delete_pattern("*")

    async def remember(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
    ) -> T | Any:
        """Return the cached value for ``key`` or produce, store and return it.

        Cached values come back in their JSON form (dicts, lists, strings), so
        producers should return JSON-shaped data. ``None`` is never cached.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        result = await producer()
        if result is not None:
            await self.set(key, result, ttl)
        return result

    async def _delete_patterns(self, patterns: Iterable[str]) -> int:
        removed = 0
        for pattern in patterns:
            removed += await self.delete_pattern(pattern)
        return removed

    async def invalidate_user_cache(self, user_id: Optional[str] = None) -> int:
        patterns: List[str] = ["users:*"]
        if user_id:
            patterns += [f"user:{user_id}", f"user:{user_id}:*", "user:email:*"]
        else:
            patterns.append("user:*")
        removed = await self._delete_patterns(patterns)
        logger.debug("user_cache_invalidated", user_id=user_id, removed=removed)
        return removed

    async def invalidate_post_cache(self, user_id: Optional[str] = None) -> int:
        patterns: List[str] = ["posts:*", "post:*"]
        if user_id:
            patterns.append(f"posts:user:{user_id}:*")
        removed = await self._delete_patterns(patterns)
        logger.debug("post_cache_invalidated", user_id=user_id, removed=removed)
        return removed

    async def invalidate_all_cache(self) -> int:
        removed = await self.clear()
        logger.info("cache_cleared", removed=removed)
        return removed
