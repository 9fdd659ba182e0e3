"""
Per-channel mutual exclusion for reconciliation passes.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable
from weakref import WeakValueDictionary

logger = logging.getLogger("permsync.locks")


class ChannelLocks:
    """Hands out one ``asyncio.Lock`` per key.

    Locks live in a ``WeakValueDictionary``: an entry disappears once no
    pass holds or waits on it, so the map does not grow with every channel
    ever synced.
    """

    def __init__(self) -> None:
        self._locks: "WeakValueDictionary[Hashable, asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._lock_for(key)
        if lock.locked():
            logger.debug("Waiting for in-flight pass on channel %s", key)
        async with lock:
            yield
