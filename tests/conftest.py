"""Shared fixtures and a scripted in-memory inference backend.

``FakeBackend`` implements the backend protocol without model weights. Tests
steer it through plain attributes: failures per level, gates that hold a
builder until released, the chunks a prompt streams, and delays for draft
completions.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from chatstack.config import ChatStackConfig
from chatstack.core.aggregator import merge_all, segment_from_chunk
from chatstack.core.backend_protocol import GenerationChunk, TranscriptEntry
from chatstack.core.cancellation import CancelToken
from chatstack.core.errors import GenerationAborted
from chatstack.core.model_catalog import CatalogModel
from chatstack.core.runtime import LlmRuntime


class FakeHandle:
    """Disposable handle that records how it was torn down."""

    def __init__(self, backend: FakeBackend, kind: str) -> None:
        self.backend = backend
        self.kind = kind
        self.disposed = False
        self.dispose_calls = 0
        self._callbacks: list[Callable[[], None]] = []

    def on_dispose(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def _fire(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.backend.disposed.append(self.kind)
        for callback in self._callbacks:
            callback()

    async def dispose(self) -> None:
        self.dispose_calls += 1
        if self.kind in self.backend.dispose_errors:
            self.disposed = True
            raise self.backend.dispose_errors[self.kind]
        self._fire()

    def dispose_from_backend(self) -> None:
        """Simulate teardown initiated by the backend itself."""
        self._fire()


class FakeSequence(FakeHandle):
    def __init__(self, backend: FakeBackend) -> None:
        super().__init__(backend, "sequence")


class FakeContext(FakeHandle):
    def __init__(self, backend: FakeBackend) -> None:
        super().__init__(backend, "context")

    def get_sequence(self) -> FakeSequence:
        self.backend._check("sequence")
        return FakeSequence(self.backend)


class FakeModel(FakeHandle):
    def __init__(self, backend: FakeBackend, path: str) -> None:
        super().__init__(backend, "model")
        self.path = path

    async def create_context(self) -> FakeContext:
        await self.backend._enter("context")
        return FakeContext(self.backend)


class FakeEngine(FakeHandle):
    def __init__(self, backend: FakeBackend) -> None:
        super().__init__(backend, "engine")

    async def load_model(self, path: str, on_progress: Callable[[float], None] | None = None) -> FakeModel:
        if on_progress is not None:
            for value in self.backend.progress_values:
                on_progress(value)
        await self.backend._enter("model")
        return FakeModel(self.backend, path)


class FakeCompletionEngine:
    def __init__(self, session: FakeSession, on_generation: Callable[[str, str], None] | None) -> None:
        self.session = session
        self.on_generation = on_generation

    async def complete(self, prefix: str) -> str:
        backend = self.session.backend
        backend.completion_requests.append(prefix)
        gate = backend.completion_gates.get(prefix)
        if gate is not None:
            await gate.wait()
        if backend.completion_error is not None:
            raise backend.completion_error
        completion = backend.complete_text(prefix)
        if self.on_generation is not None:
            self.on_generation(prefix, completion)
        return completion


class FakeSession(FakeHandle):
    def __init__(self, backend: FakeBackend, sequence: FakeSequence, system_prompt: str) -> None:
        super().__init__(backend, "session")
        self.sequence = sequence
        self.transcript: list[TranscriptEntry] = [TranscriptEntry("system", system_prompt)]

    def get_transcript(self) -> list[TranscriptEntry]:
        return list(self.transcript)

    def create_completion_engine(self, *, on_generation: Callable[[str, str], None] | None = None) -> FakeCompletionEngine:
        return FakeCompletionEngine(self, on_generation)

    async def prompt(
        self,
        text: str,
        *,
        cancel_token: CancelToken,
        on_chunk: Callable[[GenerationChunk], None],
    ) -> str:
        backend = self.backend
        backend.prompts.append(text)
        emitted: list[Any] = []
        aborted = False
        try:
            for index, chunk in enumerate(backend.chunks):
                if backend.hang_after is not None and index >= backend.hang_after:
                    backend.generation_started.set()
                    await cancel_token.wait()
                if cancel_token.cancelled:
                    aborted = True
                    break
                if backend.prompt_error is not None and index == backend.fail_after:
                    raise backend.prompt_error
                on_chunk(chunk)
                emitted.append(chunk)
                await asyncio.sleep(0)
            else:
                if backend.hang_after is not None and backend.hang_after >= len(backend.chunks):
                    backend.generation_started.set()
                    await cancel_token.wait()
                    aborted = True
        finally:
            self.transcript.append(TranscriptEntry("user", text))
            self.transcript.append(TranscriptEntry("model", _segments_of(emitted)))

        if aborted or cancel_token.cancelled:
            raise GenerationAborted("cancelled")
        return "".join(chunk.text for chunk in emitted if chunk.segment_type is None)


def _segments_of(chunks: list[GenerationChunk]) -> list[Any]:
    return list(merge_all(segment_from_chunk(chunk) for chunk in chunks))


class FakeBackend:
    """Scripted backend; every knob is a public attribute."""

    def __init__(self) -> None:
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.dispose_errors: dict[str, Exception] = {}
        self.progress_values: list[float] = [0.25, 1.5]
        self.disposed: list[str] = []
        self.calls: list[str] = []
        self.engines: list[FakeEngine] = []
        self.sessions: list[FakeSession] = []

        self.chunks: list[GenerationChunk] = [GenerationChunk("Hello"), GenerationChunk(" there")]
        self.hang_after: int | None = None
        self.generation_started = asyncio.Event()
        self.prompt_error: Exception | None = None
        self.fail_after = 0
        self.prompts: list[str] = []

        self.completion_gates: dict[str, asyncio.Event] = {}
        self.completion_error: Exception | None = None
        self.completion_requests: list[str] = []
        self.complete_text: Callable[[str], str] = lambda prefix: f"{prefix}!"

    def block(self, level: str) -> asyncio.Event:
        """Make the builder of ``level`` wait until the returned event is set."""
        gate = asyncio.Event()
        self.gates[level] = gate
        return gate

    def _check(self, level: str) -> None:
        self.calls.append(level)
        if level in self.failures:
            raise self.failures[level]

    async def _enter(self, level: str) -> None:
        self.calls.append(level)
        gate = self.gates.get(level)
        if gate is not None:
            await gate.wait()
        if level in self.failures:
            raise self.failures[level]

    async def load_engine(self) -> FakeEngine:
        await self._enter("engine")
        engine = FakeEngine(self)
        self.engines.append(engine)
        return engine

    async def create_session(self, sequence: FakeSequence, system_prompt: str) -> FakeSession:
        await self._enter("session")
        session = FakeSession(self, sequence, system_prompt)
        self.sessions.append(session)
        return session


async def settle() -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(10):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_runtime(backend: FakeBackend) -> Callable[..., LlmRuntime]:
    def _factory(**kwargs: Any) -> LlmRuntime:
        return LlmRuntime(backend, **kwargs)

    return _factory


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., ChatStackConfig]:
    """Build configs with a temporary models directory and one catalog entry."""

    def _factory(**overrides: Any) -> ChatStackConfig:
        models_dir = tmp_path / "models"
        models_dir.mkdir(exist_ok=True)
        values: dict[str, Any] = {
            "models_dir": models_dir,
            "no_log_file": True,
            "catalog": [CatalogModel(id="tiny", name="Tiny", path="tiny")],
        }
        values.update(overrides)
        return ChatStackConfig(**values)

    return _factory
