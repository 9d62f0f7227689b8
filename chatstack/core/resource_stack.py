"""Ordered bring-up and cascading teardown of the inference resources.

The stack owns four dependent levels: engine, model, context and sequence.
A level can only be built on top of a loaded level below it, and tearing a
level down (explicit reload, or teardown initiated by the backend) first
invalidates every level above it, the chat session included, so no handle
ever outlives the handle it was created from.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from functools import partial
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from .backend_protocol import InferenceBackend
from .errors import InvalidStateError, LoadError
from .locks import KeyedLock
from .state import (
    Failed,
    LevelSnapshot,
    Loaded,
    Loading,
    ResourceLevel,
    ResourceLevelState,
    Unloaded,
)

Builder = Callable[[Any], Awaitable[Any]]


class SessionDependent(Protocol):
    """Component built on top of the sequence level (the chat session)."""

    async def invalidate(self, reason: str) -> None:  # pragma: no cover - typing stub
        """Stop any in-flight work and drop everything bound to the sequence."""


class ResourceStack:
    """Owner of the engine, model, context and sequence handles.

    Every builder takes the lock of its own level, so concurrent calls on the
    same level run one after the other. Load failures are recorded as
    :class:`~chatstack.core.state.Failed` and never raised; calling a builder
    whose dependency is not loaded raises :class:`InvalidStateError` without
    touching any state.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        locks: KeyedLock | None = None,
        *,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._backend = backend
        self._locks = locks or KeyedLock()
        self._on_change = on_change
        self._states: dict[ResourceLevel, ResourceLevelState] = {
            level: Unloaded() for level in ResourceLevel
        }
        self._dependent: SessionDependent | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self.selected_model_path: str | None = None

    @property
    def locks(self) -> KeyedLock:
        return self._locks

    def attach_dependent(self, dependent: SessionDependent) -> None:
        self._dependent = dependent

    def state(self, level: ResourceLevel) -> ResourceLevelState:
        return self._states[level]

    def is_loaded(self, level: ResourceLevel) -> bool:
        return isinstance(self._states[level], Loaded)

    def require(self, level: ResourceLevel) -> Any:
        """
        Return the handle of a loaded level.

        Raises:
            InvalidStateError: If ``level`` is not loaded.
        """
        state = self._states[level]
        if not isinstance(state, Loaded):
            raise InvalidStateError(f"{level.value.capitalize()} is not loaded")
        return state.handle

    def level_snapshots(self) -> dict[ResourceLevel, LevelSnapshot]:
        return {level: LevelSnapshot.from_state(state) for level, state in self._states.items()}

    # Builders ---------------------------------------------------------------

    async def load_engine(self) -> ResourceLevelState:
        """Load (or reload) the inference engine."""
        return await self._build(ResourceLevel.ENGINE, lambda _: self._backend.load_engine())

    async def load_model(self, path: str) -> ResourceLevelState:
        """
        Load (or reload) model weights from ``path`` on the loaded engine.

        Load progress reported by the backend is published as
        ``Loading(progress)``.
        """

        def _progress(value: float) -> None:
            if isinstance(self._states[ResourceLevel.MODEL], Loading):
                self._set(ResourceLevel.MODEL, Loading(progress=max(0.0, min(1.0, value))))

        return await self._build(
            ResourceLevel.MODEL,
            lambda engine: engine.load_model(path, on_progress=_progress),
            name=Path(path).name,
            initial_progress=0.0,
            selected_path=path,
        )

    async def create_context(self) -> ResourceLevelState:
        """Create (or recreate) the execution context on the loaded model."""
        return await self._build(ResourceLevel.CONTEXT, lambda model: model.create_context())

    async def create_context_sequence(self) -> ResourceLevelState:
        """Take (or retake) a sequence from the loaded context."""

        async def _sequence(context: Any) -> Any:
            return context.get_sequence()

        return await self._build(ResourceLevel.SEQUENCE, _sequence)

    async def _build(
        self,
        level: ResourceLevel,
        builder: Builder,
        *,
        name: str | None = None,
        initial_progress: float | None = None,
        selected_path: str | None = None,
    ) -> ResourceLevelState:
        async with self._locks.hold(level.value):
            below = level.below()
            dependency = self.require(below) if below is not None else None
            if selected_path is not None:
                self.selected_model_path = selected_path

            await self._teardown_above(level, reason=f"{level.value} reload")
            await self._release(level)

            self._set(level, Loading(progress=initial_progress))
            logger.info(f"Loading {level.value}")
            try:
                handle = await builder(dependency)
            except asyncio.CancelledError:
                self._set(level, Unloaded())
                raise
            except Exception as e:
                logger.error(f"Failed to load {level.value}. {type(e).__name__}: {e}")
                self._set(level, Failed(LoadError(level.value, e)))
                return self._states[level]

            self._set(level, Loaded(handle, name=name))
            handle.on_dispose(partial(self._on_backend_dispose, level, handle))
            logger.info(f"Loaded {level.value}" + (f": {name}" if name else ""))
            return self._states[level]

    # Teardown ---------------------------------------------------------------

    async def dispose(self) -> None:
        """Tear down the chat session and every level, top-down."""
        async with self._locks.hold(ResourceLevel.ENGINE.value):
            await self._teardown_above(ResourceLevel.ENGINE, reason="shutdown")
            await self._release(ResourceLevel.ENGINE)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _teardown_above(self, level: ResourceLevel, *, reason: str) -> None:
        """
        Invalidate the chat session and release every level above ``level``.

        The caller must hold the lock of ``level``. Locks of the levels above
        are taken in ascending order; the session takes its own lock inside
        ``invalidate``, after cancelling any generation in flight.
        """
        upper_levels = level.above()
        async with self._locks.hold_many(upper.value for upper in upper_levels):
            if self._dependent is not None:
                await self._dependent.invalidate(reason)
            for upper in reversed(upper_levels):
                await self._release(upper)

    async def _release(self, level: ResourceLevel) -> None:
        state = self._states[level]
        if isinstance(state, Unloaded):
            return
        self._set(level, Unloaded())
        if not isinstance(state, Loaded):
            return
        logger.info(f"Disposing {level.value}")
        try:
            await state.handle.dispose()
        except Exception:
            logger.exception(f"Failed to dispose {level.value}")

    def _on_backend_dispose(self, level: ResourceLevel, handle: Any) -> None:
        current = self._states[level]
        if not isinstance(current, Loaded) or current.handle is not handle:
            # Our own teardown, or a handle that was already replaced.
            return

        logger.warning(f"{level.value.capitalize()} was disposed by the backend, invalidating dependents")
        self._set(level, Unloaded())
        task = asyncio.get_running_loop().create_task(self._cascade_backend_dispose(level))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _cascade_backend_dispose(self, level: ResourceLevel) -> None:
        async with self._locks.hold(level.value):
            await self._teardown_above(level, reason=f"{level.value} disposed by backend")

    def _set(self, level: ResourceLevel, state: ResourceLevelState) -> None:
        self._states[level] = state
        if self._on_change is not None:
            self._on_change()
