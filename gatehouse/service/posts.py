from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from pydantic_core import to_jsonable_python

from gatehouse.logging import get_logger
from gatehouse.service.cache import CacheService, build_cache_key
from gatehouse.service.errors import ForbiddenError, NotFoundError, store_errors
from gatehouse.service.users import COLLECTION_TTL_SECONDS, ENTITY_TTL_SECONDS, page_payload
from gatehouse.storage.memory import MemoryDatabase
from gatehouse.storage.models import Post, QueryOptions

logger = get_logger(__name__)


def post_payload(post: Post) -> Dict[str, Any]:
    return to_jsonable_python(asdict(post))


class PostService:
    def __init__(self, db: MemoryDatabase, cache: CacheService) -> None:
        self.db = db
        self.cache = cache

    async def create_post(self, user_id: str, title: str, content: str) -> Dict[str, Any]:
        with store_errors("create_post"):
            post = await self.db.create_post(title=title, content=content, user_id=user_id)
        await self.cache.invalidate_post_cache(user_id)
        logger.info("post_created", post_id=post.id, user_id=user_id)
        return post_payload(post)

    async def find_by_id(self, post_id: str) -> Optional[Dict[str, Any]]:
        async def load() -> Optional[Dict[str, Any]]:
            with store_errors("find_post_by_id"):
                post = await self.db.find_post_by_id(post_id)
            return post_payload(post) if post else None

        return await self.cache.remember(f"post:{post_id}", load, ENTITY_TTL_SECONDS)

    async def get_all_posts(self, options: Optional[QueryOptions] = None) -> Dict[str, Any]:
        options = options or QueryOptions()

        async def load() -> Dict[str, Any]:
            with store_errors("get_all_posts"):
                result = await self.db.get_all_posts(options)
            return page_payload(result, [post_payload(p) for p in result.data])

        return await self.cache.remember(
            build_cache_key("posts", options), load, COLLECTION_TTL_SECONDS
        )

    async def get_posts_by_user(
        self, user_id: str, options: Optional[QueryOptions] = None
    ) -> Dict[str, Any]:
        options = options or QueryOptions()

        async def load() -> Dict[str, Any]:
            with store_errors("get_posts_by_user"):
                result = await self.db.get_posts_by_user(user_id, options)
            return page_payload(result, [post_payload(p) for p in result.data])

        return await self.cache.remember(
            build_cache_key(f"posts:user:{user_id}", options), load, COLLECTION_TTL_SECONDS
        )

    async def _require_owned(self, post_id: str, user_id: str) -> Post:
        with store_errors("find_post_by_id"):
            post = await self.db.find_post_by_id(post_id)
        if not post:
            raise NotFoundError("post not found")
        if post.user_id != user_id:
            raise ForbiddenError("post is owned by another user")
        return post

    async def update_post(
        self,
        post_id: str,
        user_id: str,
        *,
        title: Optional[str] = None,
        content: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self._require_owned(post_id, user_id)
        with store_errors("update_post"):
            post = await self.db.update_post(post_id, user_id, title=title, content=content)
        if not post:
            raise NotFoundError("post not found")
        await self.cache.invalidate_post_cache(user_id)
        return post_payload(post)

    async def delete_post(self, post_id: str, user_id: str) -> None:
        await self._require_owned(post_id, user_id)
        with store_errors("delete_post"):
            await self.db.delete_post(post_id, user_id)
        await self.cache.invalidate_post_cache(user_id)
        logger.info("post_deleted", post_id=post_id, user_id=user_id)
