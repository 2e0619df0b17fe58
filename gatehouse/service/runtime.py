from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatehouse.config import Settings, get_settings, reset_settings_cache
from gatehouse.logging import get_logger
from gatehouse.service.auth import AuthService
from gatehouse.service.cache import CacheService
from gatehouse.service.email import EmailService
from gatehouse.service.posts import PostService
from gatehouse.service.rate_limit import FixedWindowRateLimiter
from gatehouse.service.users import UserService
from gatehouse.storage.fast_store import FastStore, RedisFastStore
from gatehouse.storage.memory import MemoryDatabase, MemoryFastStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


def _build_fast_store(settings: Settings) -> FastStore:
    if settings.use_memory_store:
        logger.info("fast_store_initialized", store_type="memory")
        return MemoryFastStore()

    redis_error: Exception | None = None
    if settings.redis_url:
        store = RedisFastStore(
            settings.redis_url,
            key_prefix=settings.redis_key_prefix,
            command_timeout=settings.redis_command_timeout,
            connect_timeout=settings.redis_connect_timeout,
        )
        try:
            store.verify_connection()
            logger.info(
                "fast_store_initialized",
                store_type="redis",
                redis_url=_mask_url_password(settings.redis_url),
            )
            return store
        except Exception as exc:
            redis_error = exc

    if not settings.test_mode and not settings.allow_redis_fallback_dev:
        raise RuntimeError(
            "Redis is required for sessions, login throttling and caching; start Redis "
            "or set USE_MEMORY_STORE=true / ALLOW_REDIS_FALLBACK_DEV=true for local runs."
        ) from redis_error

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message="Sessions, lockouts and cache entries are process-local and lost on restart.",
    )
    return MemoryFastStore()


class Runtime:
    """Holds the service singletons for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = _build_fast_store(self.settings)
        self.db = MemoryDatabase()
        self.cache = CacheService(
            self.store, default_ttl=self.settings.cache_default_ttl_seconds
        )
        self.auth = AuthService.build(self.db, self.store, self.settings, cache=self.cache)
        self.users = UserService(self.db, self.cache)
        self.posts = PostService(self.db, self.cache)
        self.rate_limiter = FixedWindowRateLimiter(self.store)
        self.email = EmailService.from_settings(self.settings)
        logger.info("runtime_initialized", store_type=type(self.store).__name__)

    async def close(self) -> None:
        await self.store.close()


_runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings so env changes apply."""
    global _runtime
    with _runtime_lock:
        _runtime = None
    reset_settings_cache()
