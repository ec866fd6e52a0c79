# network_engine/utils/keyed_locks.py
"""
In-process asyncio locks keyed by id.
Serializes placements under one root and commission fan-outs over one chain.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Iterable, List
import logging

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0  # holders plus waiters


class KeyedLocks:
    """
    Registry of asyncio.Lock objects, one per key in use.

    A key's lock lives only while some task holds or waits for it, so the
    registry stays as small as the current contention.
    """

    def __init__(self, name: str):
        self.name = name
        self._locks: Dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def _retain(self, key: Hashable) -> asyncio.Lock:
        entry = self._locks.get(key)
        if entry is None:
            entry = _Entry()
            self._locks[key] = entry
        entry.users += 1
        return entry.lock

    def _release(self, key: Hashable):
        entry = self._locks.get(key)
        if entry is None:
            return
        entry.users -= 1
        if entry.users <= 0:
            del self._locks[key]

    @asynccontextmanager
    async def lock(self, key: Hashable):
        """Hold the lock for a single key."""
        lock = self._retain(key)
        try:
            async with lock:
                yield
        finally:
            self._release(key)

    @asynccontextmanager
    async def lock_many(self, keys: Iterable[Hashable]):
        """
        Hold the locks for several keys at once.

        Keys are acquired in sorted order so overlapping chains cannot deadlock.
        """
        ordered = sorted(set(keys))
        locks = [self._retain(key) for key in ordered]
        acquired: List[asyncio.Lock] = []
        try:
            for lock in locks:
                await lock.acquire()
                acquired.append(lock)
            logger.debug(f"{self.name}: holding {len(acquired)} locks")
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in ordered:
                self._release(key)

    def clear(self):
        """Drop all locks (tests, new event loop)."""
        self._locks.clear()


# Global registries
placementLocks = KeyedLocks("placement")
chainLocks = KeyedLocks("commission_chain")
