#!/usr/bin/env python3
"""
Key-value store backends
The engine persists per-user state through a small async contract
(get / set with TTL / delete / keys) so the backing store can be swapped:
an in-process dict for tests and single-node runs, Redis in production.
"""

import asyncio
import fnmatch
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional

import redis
import redis.asyncio as aioredis

from utils.errors import PersistenceError

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Persistent store contract used by the engine"""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def keys(self, pattern: str = "*") -> List[str]:
        ...

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory store with TTL support"""

    def __init__(self):
        self.cache: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _expired(self, entry: Dict[str, Any], now: datetime) -> bool:
        return entry["expires_at"] is not None and now > entry["expires_at"]

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                return None
            if self._expired(entry, datetime.now(timezone.utc)):
                del self.cache[key]
                return None
            return entry["value"]

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        async with self._lock:
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds) if ttl_seconds else None
            self.cache[key] = {"value": value, "expires_at": expires_at}

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.cache.pop(key, None) is not None

    async def keys(self, pattern: str = "*") -> List[str]:
        async with self._lock:
            now = datetime.now(timezone.utc)
            return sorted(
                key for key, entry in self.cache.items()
                if not self._expired(entry, now) and fnmatch.fnmatchcase(key, pattern)
            )

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""
        async with self._lock:
            now = datetime.now(timezone.utc)
            expired_keys = [key for key, entry in self.cache.items() if self._expired(entry, now)]
            for key in expired_keys:
                del self.cache[key]
            return len(expired_keys)


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store (redis.asyncio)"""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    @classmethod
    def from_config(cls, redis_config: Dict[str, Any]) -> "RedisKeyValueStore":
        client = aioredis.Redis(
            host=redis_config['host'],
            port=redis_config['port'],
            username=redis_config.get('username', 'default'),
            password=redis_config.get('password') or None,
            db=redis_config.get('db', 0),
            decode_responses=True
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except redis.RedisError as e:
            raise PersistenceError("get", key, e) from e

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            await self.client.set(key, value, ex=ttl_seconds)
        except redis.RedisError as e:
            raise PersistenceError("set", key, e) from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.client.delete(key))
        except redis.RedisError as e:
            raise PersistenceError("delete", key, e) from e

    async def keys(self, pattern: str = "*") -> List[str]:
        try:
            return sorted([key async for key in self.client.scan_iter(match=pattern)])
        except redis.RedisError as e:
            raise PersistenceError("keys", pattern, e) from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except redis.RedisError as e:
            raise PersistenceError("ping", "-", e) from e

    async def close(self) -> None:
        await self.client.aclose()


def create_store(config: Dict[str, Any]) -> KeyValueStore:
    """Build the configured store backend"""
    backend = config.get('store_backend', 'memory')
    if backend == 'redis':
        logger.info(f"Using Redis store at {config['redis']['host']}:{config['redis']['port']}")
        return RedisKeyValueStore.from_config(config['redis'])
    if backend != 'memory':
        logger.warning(f"Unknown store backend '{backend}', using in-memory store")
    return InMemoryKeyValueStore()
