"""Cooperative cancellation token passed into generation calls."""

from __future__ import annotations

import asyncio
import threading

from .errors import GenerationAborted


class CancelToken:
    """One-shot cancellation signal.

    The flag is backed by a :class:`threading.Event` so backends that stream
    from a worker thread can poll it between tokens, while coroutines can
    ``await token.wait()``.
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._waiters: list[asyncio.Future[None]] = []

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self) -> None:
        """Fire the token. Does not block and is idempotent."""
        if self._flag.is_set():
            return
        self._flag.set()
        for waiter in self._waiters:
            if not waiter.done():
                waiter.get_loop().call_soon_threadsafe(_resolve, waiter)
        self._waiters.clear()

    async def wait(self) -> None:
        """Suspend until the token fires."""
        if self._flag.is_set():
            return
        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        await waiter

    def raise_if_cancelled(self) -> None:
        if self._flag.is_set():
            raise GenerationAborted("generation was cancelled")


def _resolve(waiter: asyncio.Future[None]) -> None:
    if not waiter.done():
        waiter.set_result(None)
