import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import redis

from core.locks import KeyedLock
from utils.errors import PersistenceError
from utils.kv_store import InMemoryKeyValueStore, RedisKeyValueStore, create_store


def test_in_memory_set_get_delete(store):
    async def scenario():
        await store.set("user_context:1", "{}", ttl_seconds=60)
        value = await store.get("user_context:1")
        deleted = await store.delete("user_context:1")
        return value, deleted, await store.get("user_context:1"), await store.delete("user_context:1")

    assert asyncio.run(scenario()) == ("{}", True, None, False)


def test_in_memory_expiry(store):
    async def scenario():
        await store.set("opt_out:1", "x", ttl_seconds=60)
        await store.set("opt_out:2", "y")
        store.cache["opt_out:1"]["expires_at"] = datetime.now(timezone.utc) - timedelta(seconds=1)
        return await store.keys("opt_out:*"), await store.get("opt_out:1")

    keys, expired = asyncio.run(scenario())
    assert keys == ["opt_out:2"]
    assert expired is None


def test_clear_expired(store):
    async def scenario():
        await store.set("a", "1", ttl_seconds=60)
        await store.set("b", "2", ttl_seconds=60)
        store.cache["a"]["expires_at"] = datetime.now(timezone.utc) - timedelta(seconds=1)
        return await store.clear_expired()

    assert asyncio.run(scenario()) == 1
    assert list(store.cache) == ["b"]


def test_keys_glob_is_case_sensitive(store):
    async def scenario():
        await store.set("user_profile:abc", "1")
        await store.set("USER_PROFILE:def", "2")
        await store.set("user_context:abc", "3")
        return await store.keys("user_profile:*")

    assert asyncio.run(scenario()) == ["user_profile:abc"]


class BrokenRedisClient:
    async def get(self, key):
        raise redis.ConnectionError("connection refused")

    async def ping(self):
        raise redis.ConnectionError("connection refused")


def test_redis_errors_become_persistence_errors():
    store = RedisKeyValueStore(BrokenRedisClient())

    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(store.get("user_context:5511999990000"))

    assert excinfo.value.operation == "get"
    assert "5511999990000" not in str(excinfo.value)
    assert "*********0000" in str(excinfo.value)

    with pytest.raises(PersistenceError):
        asyncio.run(store.ping())


def test_create_store_picks_backend():
    assert isinstance(create_store({"store_backend": "memory"}), InMemoryKeyValueStore)
    assert isinstance(create_store({"store_backend": "unknown"}), InMemoryKeyValueStore)

    redis_store = create_store({
        "store_backend": "redis",
        "redis": {"host": "localhost", "port": 6379, "username": "default", "password": "", "db": 0}
    })
    assert isinstance(redis_store, RedisKeyValueStore)


def test_keyed_lock_serializes_one_user_and_cleans_up():
    locks = KeyedLock()
    order = []

    async def worker(key, label, delay):
        async with locks.hold(key):
            order.append(f"{label}-start")
            await asyncio.sleep(delay)
            order.append(f"{label}-end")

    async def scenario():
        await asyncio.gather(worker("u1", "a", 0.02), worker("u1", "b", 0), worker("u2", "c", 0))

    asyncio.run(scenario())

    assert order.index("a-end") < order.index("b-start")
    assert order.index("c-end") < order.index("a-end")
    assert len(locks) == 0
