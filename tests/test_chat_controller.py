"""Tests for prompting, cancellation, reset and draft completion."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import threading
import time

import pytest

from chatstack.core.backend_protocol import GenerationChunk
from chatstack.core.cancellation import CancelToken
from chatstack.core.errors import ChatSessionBusyError, GenerationAborted, GenerationError, InvalidStateError
from chatstack.core.runtime import LlmRuntime
from chatstack.core.state import DraftPrompt, ModelItem, ResourceLevel, RuntimeSnapshot, TextSegment, UserItem

from tests.conftest import FakeBackend, settle, wait_until


async def _ready(make_runtime: Callable[..., LlmRuntime]) -> LlmRuntime:
    runtime = make_runtime()
    await runtime.load_model_file("/models/foo")
    assert runtime.chat.state.loaded
    return runtime


def _record(runtime: LlmRuntime) -> list[RuntimeSnapshot]:
    snapshots: list[RuntimeSnapshot] = []
    runtime.publisher.add_listener(snapshots.append)
    return snapshots


@pytest.mark.asyncio
async def test_prompt_requires_loaded_session(make_runtime: Callable[..., LlmRuntime]) -> None:
    runtime = make_runtime()
    with pytest.raises(InvalidStateError, match="not loaded"):
        await runtime.chat.prompt("hello")


@pytest.mark.asyncio
async def test_prompt_streams_into_history(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    snapshots = _record(runtime)

    response = await runtime.chat.prompt("hi")

    assert response == "Hello there"
    assert backend.prompts == ["hi"]
    state = runtime.chat.state
    assert not state.generating
    assert state.history == (UserItem("hi"), ModelItem((TextSegment("Hello there"),)))

    histories = [snap.chat_session.history for snap in snapshots]
    assert snapshots[0].chat_session.generating
    assert histories[0] == (UserItem("hi"),)
    assert (UserItem("hi"), ModelItem((TextSegment("Hello"),))) in histories
    assert not snapshots[-1].chat_session.generating


@pytest.mark.asyncio
async def test_second_prompt_while_generating_fails_fast(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.hang_after = 1

    first = asyncio.create_task(runtime.chat.prompt("one"))
    await backend.generation_started.wait()

    with pytest.raises(ChatSessionBusyError):
        await runtime.chat.prompt("two")

    runtime.chat.stop_active_prompt()
    assert await first == "Hello"
    assert backend.prompts == ["one"]


@pytest.mark.asyncio
async def test_stop_keeps_partial_response(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.hang_after = 1

    task = asyncio.create_task(runtime.chat.prompt("tell me a story"))
    await backend.generation_started.wait()
    assert runtime.chat.state.generating

    runtime.chat.stop_active_prompt()
    runtime.chat.stop_active_prompt()
    response = await task

    assert response == "Hello"
    state = runtime.chat.state
    assert not state.generating
    assert state.history == (UserItem("tell me a story"), ModelItem((TextSegment("Hello"),)))


@pytest.mark.asyncio
async def test_stop_without_generation_is_a_no_op(make_runtime: Callable[..., LlmRuntime]) -> None:
    runtime = await _ready(make_runtime)
    before = runtime.chat.state
    runtime.chat.stop_active_prompt()
    assert runtime.chat.state == before


@pytest.mark.asyncio
async def test_generation_failure_raises_and_clears_generating(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.prompt_error = RuntimeError("gpu fault")
    backend.fail_after = 1

    with pytest.raises(GenerationError, match="gpu fault"):
        await runtime.chat.prompt("hi")

    state = runtime.chat.state
    assert not state.generating
    assert state.loaded
    assert state.history == (UserItem("hi"), ModelItem((TextSegment("Hello"),)))


@pytest.mark.asyncio
async def test_thought_chunks_become_typed_segments(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.chunks = [
        GenerationChunk("hmm", "thought"),
        GenerationChunk(" ok", "thought"),
        GenerationChunk("Yes"),
    ]

    response = await runtime.chat.prompt("really?")

    assert response == "Yes"
    model_item = runtime.chat.state.history[-1]
    assert isinstance(model_item, ModelItem)
    assert [segment.text for segment in model_item.segments] == ["hmm ok", "Yes"]


@pytest.mark.asyncio
async def test_reset_clears_history_and_draft(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    await runtime.chat.prompt("hi")
    await runtime.chat.set_draft_prompt("next")
    old_session = backend.sessions[-1]

    state = await runtime.chat.reset_chat_history()

    assert state.loaded
    assert state.history == ()
    assert state.draft == DraftPrompt()
    assert old_session.disposed
    assert len(backend.sessions) == 2


@pytest.mark.asyncio
async def test_reset_requires_sequence(make_runtime: Callable[..., LlmRuntime]) -> None:
    runtime = make_runtime()
    with pytest.raises(InvalidStateError):
        await runtime.chat.reset_chat_history()


@pytest.mark.asyncio
async def test_reset_during_generation_cancels_it(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.hang_after = 1

    task = asyncio.create_task(runtime.chat.prompt("long"))
    await backend.generation_started.wait()
    await runtime.chat.reset_chat_history()

    assert await task == "Hello"
    assert runtime.chat.state.history == ()
    assert not runtime.chat.state.generating


@pytest.mark.asyncio
async def test_model_reload_during_generation_invalidates_session(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.hang_after = 1
    session = backend.sessions[-1]

    task = asyncio.create_task(runtime.chat.prompt("long"))
    await backend.generation_started.wait()
    await runtime.stack.load_model("/models/bar")

    assert await task == "Hello"
    state = runtime.chat.state
    assert not state.loaded
    assert not state.generating
    assert state.history == ()
    assert session.disposed
    assert not runtime.stack.is_loaded(ResourceLevel.SEQUENCE)
    with pytest.raises(InvalidStateError):
        await runtime.chat.prompt("again")


@pytest.mark.asyncio
async def test_backend_disposing_sequence_unloads_session(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    sequence = runtime.stack.require(ResourceLevel.SEQUENCE)

    sequence.dispose_from_backend()
    await wait_until(lambda: not runtime.chat.state.loaded)

    assert backend.sessions[-1].disposed


@pytest.mark.asyncio
async def test_backend_disposing_session_unloads_it(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    await runtime.chat.set_draft_prompt("keep me")

    backend.sessions[-1].dispose_from_backend()

    state = runtime.chat.state
    assert not state.loaded
    assert state.draft == DraftPrompt("keep me", "")
    assert runtime.stack.is_loaded(ResourceLevel.SEQUENCE)


@pytest.mark.asyncio
async def test_session_creation_failure_is_reported(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    backend.failures["session"] = RuntimeError("no free slot")
    runtime = make_runtime()

    await runtime.load_model_file("/models/foo")

    state = runtime.chat.state
    assert not state.loaded
    assert state.error == "no free slot"
    assert runtime.stack.is_loaded(ResourceLevel.SEQUENCE)


@pytest.mark.asyncio
async def test_draft_completion_is_committed_with_its_prompt(make_runtime: Callable[..., LlmRuntime]) -> None:
    runtime = await _ready(make_runtime)

    draft = await runtime.chat.set_draft_prompt("How do")

    assert draft == DraftPrompt("How do", "How do!")
    assert runtime.chat.state.draft == draft


@pytest.mark.asyncio
async def test_stale_draft_completion_is_discarded(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    gate = asyncio.Event()
    backend.completion_gates["he"] = gate

    slow = asyncio.create_task(runtime.chat.set_draft_prompt("he"))
    await wait_until(lambda: "he" in backend.completion_requests)
    await runtime.chat.set_draft_prompt("hel")
    assert runtime.chat.state.draft == DraftPrompt("hel", "hel!")

    gate.set()
    await slow
    assert runtime.chat.state.draft == DraftPrompt("hel", "hel!")


@pytest.mark.asyncio
async def test_empty_draft_clears_completion(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    await runtime.chat.set_draft_prompt("abc")
    backend.completion_requests.clear()

    draft = await runtime.chat.set_draft_prompt("")

    assert draft == DraftPrompt("", "")
    assert backend.completion_requests == []


@pytest.mark.asyncio
async def test_draft_without_session_is_ignored(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = make_runtime()
    draft = await runtime.chat.set_draft_prompt("abc")
    assert draft == DraftPrompt()
    assert backend.completion_requests == []


@pytest.mark.asyncio
async def test_completion_failure_yields_empty_completion(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.completion_error = RuntimeError("sampler broke")

    draft = await runtime.chat.set_draft_prompt("abc")

    assert draft == DraftPrompt("abc", "")


@pytest.mark.asyncio
async def test_draft_text_survives_reload_and_is_completed_again(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    backend.complete_text = lambda prefix: " first"
    await runtime.chat.set_draft_prompt("abc")

    await runtime.stack.load_model("/models/bar")
    assert runtime.chat.state.draft == DraftPrompt("abc", "")

    backend.complete_text = lambda prefix: " second"
    await runtime.load_model_file("/models/bar")
    await settle()

    assert runtime.chat.state.loaded
    assert runtime.chat.state.draft == DraftPrompt("abc", " second")


def test_prompt_after_completion_recomputes_draft() -> None:
    """A finished response refreshes the draft completion against the new history."""

    async def _test() -> None:
        backend = FakeBackend()
        runtime = LlmRuntime(backend)
        await runtime.load_model_file("/models/foo")
        await runtime.chat.set_draft_prompt("and")
        backend.completion_requests.clear()

        await runtime.chat.prompt("hi")

        assert backend.completion_requests == ["and"]
        assert runtime.chat.state.draft == DraftPrompt("and", "and!")

    asyncio.run(_test())


@pytest.mark.asyncio
async def test_cancelled_prompt_task_stops_worker_before_releasing_session(
    backend: FakeBackend,
    make_runtime: Callable[..., LlmRuntime],
) -> None:
    runtime = await _ready(make_runtime)
    session = backend.sessions[-1]
    started = threading.Event()
    stopped = threading.Event()

    def _generate(token: CancelToken) -> None:
        started.set()
        deadline = time.monotonic() + 5
        while not token.cancelled and time.monotonic() < deadline:
            time.sleep(0.001)
        if token.cancelled:
            stopped.set()

    async def _threaded_prompt(text: str, *, cancel_token: CancelToken, on_chunk: Callable[..., None]) -> str:
        await asyncio.to_thread(_generate, cancel_token)
        raise GenerationAborted("cancelled")

    session.prompt = _threaded_prompt
    task = asyncio.create_task(runtime.chat.prompt("hi"))
    assert await asyncio.to_thread(started.wait, 2)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert stopped.is_set()
    assert not runtime.locks.locked("session")
    assert not runtime.chat.state.generating
    assert runtime.chat.state.loaded
