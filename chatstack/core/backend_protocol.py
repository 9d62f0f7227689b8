"""Inference backend protocol used across the core modules.

This module defines the typing contract for the objects an inference
backend hands to the resource stack and the chat session controller. The
core never inspects a handle beyond these methods, which keeps concrete
backends (see :mod:`chatstack.models.mlx_lm`) swappable and lets tests drive
the core with scripted fakes.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Protocol

from .cancellation import CancelToken
from .state import Segment

ProgressCallback = Callable[[float], None]
DisposeCallback = Callable[[], None]


@dataclass(frozen=True, slots=True)
class GenerationChunk:
    """One piece of streamed output.

    ``segment_type`` is ``None`` for plain response text; otherwise the chunk
    belongs to a typed segment (for example ``"thought"``) that may carry
    start and end timestamps.
    """

    text: str
    segment_type: str | None = None
    segment_start_time: datetime | None = None
    segment_end_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class TranscriptEntry:
    """Authoritative transcript item.

    ``content`` is plain text for ``system`` and ``user`` entries. Model
    entries may also hold a sequence of strings and segments in the order
    they were produced.
    """

    role: Literal["system", "user", "model"]
    content: str | Sequence[str | Segment]


class Disposable(Protocol):
    """Anything the stack owns and must tear down explicitly."""

    async def dispose(self) -> None:  # pragma: no cover - typing stub
        """Release the resource. Calling it twice must be harmless."""

    def on_dispose(self, callback: DisposeCallback) -> None:  # pragma: no cover - typing stub
        """
        Register a callback fired once when the resource is torn down.

        The callback fires for explicit ``dispose()`` calls as well as for
        teardown initiated by the backend itself.
        """


class SequenceHandle(Disposable, Protocol):
    """The slot of a context a chat session is bound to."""


class ContextHandle(Disposable, Protocol):
    def get_sequence(self) -> SequenceHandle:  # pragma: no cover - typing stub
        """Return a sequence on this context."""


class ModelHandle(Disposable, Protocol):
    async def create_context(self) -> ContextHandle:  # pragma: no cover - typing stub
        """Create an execution context for this model."""


class EngineHandle(Disposable, Protocol):
    async def load_model(
        self,
        path: str,
        on_progress: ProgressCallback | None = None,
    ) -> ModelHandle:  # pragma: no cover - typing stub
        """
        Load model weights from a local path.

        Parameters:
            path (str): Validated local model path.
            on_progress (Callable[[float], None] | None): Optional callback receiving load progress in ``[0, 1]``.
        """


class CompletionEngine(Protocol):
    async def complete(self, prefix: str) -> str:  # pragma: no cover - typing stub
        """Return the suggested continuation of ``prefix`` (empty when there is none)."""


class ChatSessionHandle(Disposable, Protocol):
    async def prompt(
        self,
        text: str,
        *,
        cancel_token: CancelToken,
        on_chunk: Callable[[GenerationChunk], None],
    ) -> str:  # pragma: no cover - typing stub
        """
        Generate a response to ``text``.

        Chunks are delivered through ``on_chunk`` as they are produced. When
        ``cancel_token`` fires the backend stops promptly and raises
        :class:`~chatstack.core.errors.GenerationAborted`; any other failure
        is raised as-is.

        Returns:
            str: The full response text.
        """

    def get_transcript(self) -> list[TranscriptEntry]:  # pragma: no cover - typing stub
        """Return the authoritative transcript, system prompt included."""

    def create_completion_engine(
        self,
        *,
        on_generation: Callable[[str, str], None] | None = None,
    ) -> CompletionEngine:  # pragma: no cover - typing stub
        """Create a draft completion engine bound to this session."""


class InferenceBackend(Protocol):
    """Entry point of a backend: the engine loader and the session factory."""

    async def load_engine(self) -> EngineHandle:  # pragma: no cover - typing stub
        """Initialise the inference engine."""

    async def create_session(
        self,
        sequence: SequenceHandle,
        system_prompt: str,
    ) -> ChatSessionHandle:  # pragma: no cover - typing stub
        """Create a chat session bound to ``sequence``."""
