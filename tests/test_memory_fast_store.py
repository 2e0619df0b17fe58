"""Tests for the in-process FastStore used in tests and local runs."""

import pytest

from gatehouse.storage.errors import StoreUnavailable


class TestStrings:
    async def test_set_get_delete(self, store):
        await store.set("a", "1")
        assert await store.get("a") == "1"
        assert await store.delete("a", "missing") == 1
        assert await store.get("a") is None

    async def test_ttl_expires_lazily(self, store, clock):
        await store.set("session:x", "v", 10)
        clock.advance(9)
        assert await store.get("session:x") == "v"
        clock.advance(1)
        assert await store.get("session:x") is None

    async def test_set_without_ttl_clears_deadline(self, store, clock):
        await store.set("k", "v", 5)
        await store.set("k", "w")
        clock.advance(60)
        assert await store.get("k") == "w"
        assert store.ttl("k") is None

    async def test_keys_glob(self, store):
        await store.set("cache:users:1", "a")
        await store.set("cache:users:2", "b")
        await store.set("session:1", "c")

        assert sorted(await store.keys("cache:users:*")) == ["cache:users:1", "cache:users:2"]

    async def test_keys_skips_expired(self, store, clock):
        await store.set("cache:a", "1", 5)
        await store.set("cache:b", "1")
        clock.advance(6)
        assert await store.keys("cache:*") == ["cache:b"]


class TestSetsAndCounters:
    async def test_set_membership(self, store):
        assert await store.sadd("idx", "a", "b") == 2
        assert await store.sadd("idx", "b") == 0
        assert await store.smembers("idx") == {"a", "b"}
        assert await store.srem("idx", "a", "zzz") == 1
        assert await store.smembers("idx") == {"b"}

    async def test_empty_set_is_removed(self, store):
        await store.sadd("idx", "a")
        await store.srem("idx", "a")
        assert await store.keys("idx") == []

    async def test_incr_and_expire(self, store, clock):
        assert await store.incr("hits") == 1
        assert await store.incr("hits") == 2
        assert await store.expire("hits", 30) is True
        clock.advance(31)
        assert await store.incr("hits") == 1

    async def test_expire_missing_key(self, store):
        assert await store.expire("nope", 10) is False

    async def test_wrong_type_raises(self, store):
        await store.set("plain", "x")
        with pytest.raises(StoreUnavailable):
            await store.sadd("plain", "member")

    async def test_flush(self, store):
        await store.set("a", "1")
        await store.sadd("b", "x")
        await store.flush()
        assert await store.keys("*") == []
        assert await store.ping() is True
