"""API endpoints of the chatstack server."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from http import HTTPStatus
import json
from typing import Annotated, Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from loguru import logger

from ..core.publisher import StateBroadcaster
from ..core.runtime import LlmRuntime
from ..core.state import RuntimeSnapshot
from ..schemas.api import (
    DraftRequest,
    HealthCheckResponse,
    HealthCheckStatus,
    LoadModelRequest,
    ModelPathRequest,
    ModelsResponse,
    PromptRequest,
    PromptResponse,
    ResetRequest,
)
from ..version import __version__

router = APIRouter()


def get_runtime(raw_request: Request) -> LlmRuntime:
    """Return the runtime attached by the lifespan, or fail with 503."""
    runtime = getattr(raw_request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=HTTPStatus.SERVICE_UNAVAILABLE, detail="Runtime is not initialized")
    return runtime


def _state(runtime: LlmRuntime) -> dict[str, Any]:
    return runtime.snapshot().to_dict()


def _yield_sse_event(snapshot: RuntimeSnapshot) -> str:
    return f"data: {json.dumps(snapshot.to_dict())}\n\n"


async def stream_state_events(
    broadcaster: StateBroadcaster,
    raw_request: Request | None = None,
    max_events: int | None = None,
) -> AsyncGenerator[str, None]:
    """
    Serialize published snapshots as server-sent events.

    The first event is the latest snapshot; every later one is the newest
    state at the time the client is ready for it.

    Parameters:
        broadcaster (StateBroadcaster): Source of snapshots.
        raw_request (Request | None): Used to stop when the client disconnects.
        max_events (int | None): Stop after this many events.
    """
    sent = 0
    async for snapshot in broadcaster.subscribe():
        if raw_request is not None and await raw_request.is_disconnected():
            logger.debug("State stream client disconnected")
            break
        yield _yield_sse_event(snapshot)
        sent += 1
        if max_events is not None and sent >= max_events:
            break


# =============================================================================
# Monitoring
# =============================================================================


@router.get("/health", response_model=None)
async def health(raw_request: Request) -> HealthCheckResponse:
    runtime = get_runtime(raw_request)
    snapshot = runtime.snapshot()
    return HealthCheckResponse(
        status=HealthCheckStatus.OK,
        version=__version__,
        chat_loaded=snapshot.chat_session.loaded,
        model_path=snapshot.selected_model_path,
    )


@router.get("/v1/state")
async def state(raw_request: Request) -> dict[str, Any]:
    return _state(get_runtime(raw_request))


@router.get("/v1/state/stream", response_model=None)
async def state_stream(
    raw_request: Request,
    max_events: Annotated[int | None, Query(ge=1)] = None,
) -> StreamingResponse:
    """Push a full runtime snapshot on every state change (text/event-stream)."""
    runtime = get_runtime(raw_request)
    publisher = runtime.publisher
    if not isinstance(publisher, StateBroadcaster):
        raise HTTPException(status_code=HTTPStatus.NOT_IMPLEMENTED, detail="State streaming is not available")
    if publisher.latest is None:
        publisher.publish(runtime.snapshot())
    return StreamingResponse(
        stream_state_events(publisher, raw_request, max_events),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# =============================================================================
# Catalog and resource stack
# =============================================================================


@router.get("/v1/models")
async def models(raw_request: Request) -> ModelsResponse:
    runtime = get_runtime(raw_request)
    return ModelsResponse(data=runtime.catalog.list_models())


@router.post("/v1/models/load")
async def load_model_full(request: LoadModelRequest, raw_request: Request) -> dict[str, Any]:
    """Select a model and bring the whole stack up to a ready chat session."""
    runtime = get_runtime(raw_request)
    if request.model_id is not None:
        snapshot = await runtime.load_model_by_id(request.model_id)
    else:
        snapshot = await runtime.load_model_file(str(request.model_path))
    return snapshot.to_dict()


@router.post("/v1/engine/load")
async def load_engine(raw_request: Request) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    await runtime.stack.load_engine()
    return _state(runtime)


@router.post("/v1/model/load")
async def load_model(request: ModelPathRequest, raw_request: Request) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    await runtime.stack.load_model(request.model_path)
    return _state(runtime)


@router.post("/v1/context")
async def create_context(raw_request: Request) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    await runtime.stack.create_context()
    return _state(runtime)


@router.post("/v1/sequence")
async def create_sequence(raw_request: Request) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    await runtime.stack.create_context_sequence()
    return _state(runtime)


@router.post("/v1/session")
async def create_session(raw_request: Request) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    await runtime.chat.create_session()
    return _state(runtime)


# =============================================================================
# Chat
# =============================================================================


@router.post("/v1/chat/prompt")
async def prompt(request: PromptRequest, raw_request: Request) -> PromptResponse:
    """Generate a response; returns once it completes or is stopped."""
    runtime = get_runtime(raw_request)
    response = await runtime.chat.prompt(request.message)
    return PromptResponse(response=response, state=_state(runtime))


@router.post("/v1/chat/stop")
async def stop(raw_request: Request) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    runtime.chat.stop_active_prompt()
    return _state(runtime)


@router.post("/v1/chat/reset")
async def reset(raw_request: Request, request: ResetRequest | None = None) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    mark_loaded = request.mark_loaded if request is not None else True
    await runtime.chat.reset_chat_history(mark_loaded=mark_loaded)
    return _state(runtime)


@router.put("/v1/chat/draft")
async def set_draft(request: DraftRequest, raw_request: Request) -> dict[str, Any]:
    runtime = get_runtime(raw_request)
    await runtime.chat.set_draft_prompt(request.prompt)
    return _state(runtime)
