from __future__ import annotations

import contextlib
from typing import Iterator, List, Optional, Protocol, Set

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatehouse.logging import get_logger
from gatehouse.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class FastStore(Protocol):
    """Key/value capability with per-key TTL, counters and sets.

    Every method may raise ``StoreUnavailable``. A missing key is never an
    error: reads return ``None`` or an empty collection.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, pattern: str) -> List[str]: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl_seconds: int) -> bool: ...

    async def flush(self) -> None: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class RedisFastStore:
    """FastStore backed by redis.asyncio with a namespacing key prefix."""

    _SCAN_BATCH = 500

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "gatehouse:",
        command_timeout: float = 2.0,
        connect_timeout: float = 5.0,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=command_timeout,
            socket_connect_timeout=connect_timeout,
        )

    def _k(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisError, OSError) as exc:
            logger.warning(
                "fast_store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                f"fast store {operation} failed", operation=operation
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        with self._guard("get"):
            return await self.client.get(self._k(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with self._guard("set"):
            if ttl_seconds is not None:
                await self.client.set(self._k(key), value, ex=max(1, int(ttl_seconds)))
            else:
                await self.client.set(self._k(key), value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with self._guard("delete"):
            return int(await self.client.delete(*(self._k(k) for k in keys)))

    async def keys(self, pattern: str) -> List[str]:
        # SCAN instead of KEYS so large keyspaces do not block the server
        found: List[str] = []
        prefix_len = len(self.key_prefix)
        with self._guard("scan"):
            async for key in self.client.scan_iter(
                match=self._k(pattern), count=self._SCAN_BATCH
            ):
                found.append(key[prefix_len:])
        return found

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with self._guard("sadd"):
            return int(await self.client.sadd(self._k(key), *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with self._guard("srem"):
            return int(await self.client.srem(self._k(key), *members))

    async def smembers(self, key: str) -> Set[str]:
        with self._guard("smembers"):
            return set(await self.client.smembers(self._k(key)))

    async def incr(self, key: str) -> int:
        with self._guard("incr"):
            return int(await self.client.incr(self._k(key)))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._guard("expire"):
            return bool(await self.client.expire(self._k(key), max(1, int(ttl_seconds))))

    async def flush(self) -> None:
        if not self.key_prefix:
            with self._guard("flushdb"):
                await self.client.flushdb()
            return
        batch: List[str] = []
        with self._guard("flush"):
            async for key in self.client.scan_iter(
                match=self._k("*"), count=self._SCAN_BATCH
            ):
                batch.append(key)
                if len(batch) >= self._SCAN_BATCH:
                    await self.client.delete(*batch)
                    batch = []
            if batch:
                await self.client.delete(*batch)

    async def ping(self) -> bool:
        with self._guard("ping"):
            return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["FastStore", "RedisFastStore"]
