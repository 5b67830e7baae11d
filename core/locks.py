#!/usr/bin/env python3
"""
Per-user async locks
Serializes read-modify-write cycles on one user's state while leaving
different users free to proceed concurrently
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class KeyedLock:
    """Registry of asyncio.Lock objects keyed by user id, dropped when idle"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
