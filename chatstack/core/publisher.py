"""State publication: full snapshots pushed to listeners and subscribers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
import contextlib
from typing import Protocol

from loguru import logger

from .state import RuntimeSnapshot

SnapshotListener = Callable[[RuntimeSnapshot], None]


class StatePublisher(Protocol):
    """Receives a complete snapshot after every state mutation."""

    def publish(self, snapshot: RuntimeSnapshot) -> None:  # pragma: no cover - typing stub
        """Replace the published state with ``snapshot``."""


class StateBroadcaster:
    """Fan out snapshots to synchronous listeners and async subscribers.

    Subscribers are served through size-one queues: a newer snapshot replaces
    one that has not been consumed yet, so a slow consumer always catches up
    to the most recent state instead of replaying every intermediate one.
    """

    def __init__(self) -> None:
        self.latest: RuntimeSnapshot | None = None
        self._listeners: list[SnapshotListener] = []
        self._queues: set[asyncio.Queue[RuntimeSnapshot]] = set()

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """
        Register a synchronous listener.

        Returns:
            Callable[[], None]: A function that removes the listener again.
        """
        self._listeners.append(listener)

        def _remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return _remove

    def publish(self, snapshot: RuntimeSnapshot) -> None:
        self.latest = snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                # A broken listener must not break the operation that published.
                logger.exception("State listener raised an exception")
        for queue in self._queues:
            if queue.full():
                with contextlib.suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
            queue.put_nowait(snapshot)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    async def subscribe(self) -> AsyncIterator[RuntimeSnapshot]:
        """Yield the latest snapshot, then every newer one as it arrives."""
        queue: asyncio.Queue[RuntimeSnapshot] = asyncio.Queue(maxsize=1)
        if self.latest is not None:
            queue.put_nowait(self.latest)
        self._queues.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.discard(queue)
