import asyncio
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import pytest

# Make packages importable when running tests from the repository root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.engine import MemoryEngine
from core.locks import KeyedLock
from core.memory_store import MemoryStore
from core.profile_evolver import ProfileEvolver
from core.reference_resolver import ReferenceResolver
from utils.errors import PersistenceError
from utils.kv_store import InMemoryKeyValueStore, KeyValueStore


class FakeClock:
    """Callable clock the tests move forward by hand"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 3, 4, 10, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FailingStore(KeyValueStore):
    """Store whose every operation fails like an unreachable Redis"""

    def __init__(self):
        self.closed = False

    async def get(self, key: str) -> Optional[str]:
        raise PersistenceError("get", key, ConnectionError("down"))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        raise PersistenceError("set", key, ConnectionError("down"))

    async def delete(self, key: str) -> bool:
        raise PersistenceError("delete", key, ConnectionError("down"))

    async def keys(self, pattern: str = "*") -> List[str]:
        raise PersistenceError("keys", pattern, ConnectionError("down"))

    async def ping(self) -> bool:
        raise PersistenceError("ping", "-", ConnectionError("down"))

    async def close(self) -> None:
        self.closed = True


class YieldingStore(InMemoryKeyValueStore):
    """In-memory store that gives up control on every read and write, like a network round trip"""

    async def get(self, key: str) -> Optional[str]:
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        await asyncio.sleep(0)
        await super().set(key, value, ttl_seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def failing_store():
    return FailingStore()


@pytest.fixture
def memory(store, clock):
    return MemoryStore(store, locks=KeyedLock(), clock=clock)


@pytest.fixture
def evolver(store, clock):
    return ProfileEvolver(store, locks=KeyedLock(), clock=clock)


@pytest.fixture
def resolver(memory, clock):
    return ReferenceResolver(memory, clock=clock)


@pytest.fixture
def engine(store, clock):
    return MemoryEngine(config={}, store=store, clock=clock)
