"""In-process keyed locks.

Serializes work on the same transaction id or order id inside one event
loop. Across processes the unique constraint on ``transaction_id`` is the
backstop; this only prevents pointless races within a worker.

Multi-key acquisition always takes locks in sorted key order so that two
operations touching the same pair of orders cannot deadlock.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable


class KeyedLocks:
    """A lazily populated map of ``asyncio.Lock`` keyed by string.

    Entries are dropped once no coroutine holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for a single key."""
        async with self.hold_many([key]):
            yield

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str | None]) -> AsyncIterator[None]:
        """Hold the locks for several keys, acquired in sorted order."""
        ordered = sorted({k for k in keys if k})
        acquired: list[str] = []
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1
            self._locks.setdefault(key, asyncio.Lock())
        try:
            for key in ordered:
                await self._locks[key].acquire()
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
            for key in ordered:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]
