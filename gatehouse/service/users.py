from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from pydantic_core import to_jsonable_python

from gatehouse.logging import get_logger
from gatehouse.service.cache import CacheService, build_cache_key
from gatehouse.service.errors import ConflictError, NotFoundError, store_errors
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.memory import MemoryDatabase
from gatehouse.storage.models import PaginatedResult, QueryOptions, User

logger = get_logger(__name__)

ENTITY_TTL_SECONDS = 1800
COLLECTION_TTL_SECONDS = 900


def public_user_payload(user: User) -> Dict[str, Any]:
    return to_jsonable_python(asdict(user.to_public()))


def page_payload(result: PaginatedResult, items: list) -> Dict[str, Any]:
    return {
        "data": items,
        "page": result.page,
        "limit": result.limit,
        "total": result.total,
        "total_pages": result.total_pages,
    }


class UserService:
    """Read-through user lookups; every write invalidates the user cache."""

    def __init__(self, db: MemoryDatabase, cache: CacheService) -> None:
        self.db = db
        self.cache = cache

    async def find_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        async def load() -> Optional[Dict[str, Any]]:
            with store_errors("find_user_by_id"):
                user = await self.db.find_user_by_id(user_id)
            return public_user_payload(user) if user else None

        return await self.cache.remember(f"user:{user_id}", load, ENTITY_TTL_SECONDS)

    async def find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        normalized = email.strip().lower()

        async def load() -> Optional[Dict[str, Any]]:
            with store_errors("find_user_by_email"):
                user = await self.db.find_user_by_email(normalized)
            return public_user_payload(user) if user else None

        return await self.cache.remember(
            f"user:email:{normalized}", load, ENTITY_TTL_SECONDS
        )

    async def get_all_users(self, options: Optional[QueryOptions] = None) -> Dict[str, Any]:
        options = options or QueryOptions()

        async def load() -> Dict[str, Any]:
            with store_errors("get_all_users"):
                result = await self.db.get_all_users(options)
            return page_payload(result, [public_user_payload(u) for u in result.data])

        return await self.cache.remember(
            build_cache_key("users", options), load, COLLECTION_TTL_SECONDS
        )

    async def update_user(
        self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None
    ) -> Dict[str, Any]:
        changes = {
            "name": name.strip() if name else None,
            "email": email.strip().lower() if email else None,
        }
        try:
            with store_errors("update_user"):
                user = await self.db.update_user(user_id, **changes)
        except ConstraintViolation as exc:
            raise ConflictError("User with this email already exists", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found")
        await self.cache.invalidate_user_cache(user_id)
        logger.info("user_updated", user_id=user_id)
        return public_user_payload(user)

    async def delete_user(self, user_id: str) -> bool:
        with store_errors("delete_user"):
            deleted = await self.db.delete_user(user_id)
        if deleted:
            await self.cache.invalidate_user_cache(user_id)
            await self.cache.invalidate_post_cache(user_id)
            logger.info("user_deleted", user_id=user_id)
        return deleted
