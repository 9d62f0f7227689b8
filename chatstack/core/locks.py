"""Per-resource asyncio locks.

Each resource key (a stack level or the chat session) gets its own
:class:`asyncio.Lock`. ``asyncio.Lock`` wakes waiters in FIFO order, so
concurrent calls on the same key form a queue rather than interleaving.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager

from loguru import logger

from ..const import LOCK_ORDER


class KeyedLock:
    """Registry of exclusive locks addressed by key."""

    def __init__(self, order: Iterable[str] = LOCK_ORDER) -> None:
        self._order = tuple(order)
        self._locks: dict[str, asyncio.Lock] = {key: asyncio.Lock() for key in self._order}

    def _lock(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            raise KeyError(f"Unknown lock key '{key}'")
        return self._locks[key]

    def locked(self, key: str) -> bool:
        return self._lock(key).locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for ``key`` for the duration of the block."""
        lock = self._lock(key)
        if lock.locked():
            logger.debug(f"Waiting for '{key}' lock")
        async with lock:
            yield

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """
        Hold several locks at once, acquired in the registry's canonical order.

        Acquiring in one fixed order is what keeps cascading operations from
        deadlocking against each other.
        """
        wanted = set(keys)
        for key in wanted:
            self._lock(key)
        async with AsyncExitStack() as stack:
            for key in self._order:
                if key in wanted:
                    await stack.enter_async_context(self.hold(key))
            yield
