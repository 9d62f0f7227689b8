"""Chat session controller: prompts, cancellation, reset and draft completion.

The controller owns the backend chat session and its draft completion
engine. It is built on the sequence level of the resource stack and is
invalidated by the stack whenever that level (or anything below it) is torn
down.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from loguru import logger

from ..const import DEFAULT_SYSTEM_PROMPT
from .aggregator import merge, project_history, segment_from_chunk
from .backend_protocol import (
    ChatSessionHandle,
    CompletionEngine,
    GenerationChunk,
    InferenceBackend,
)
from .cancellation import CancelToken
from .errors import (
    ChatSessionBusyError,
    GenerationAborted,
    GenerationError,
    InvalidStateError,
)
from .locks import KeyedLock
from .resource_stack import ResourceStack
from .state import ChatSessionState, DraftPrompt, ResourceLevel, Segment, TextSegment

SESSION_LOCK = "session"


class ChatSessionController:
    """Runs prompt/response cycles against the active chat session.

    Session-level operations (create, prompt, reset, invalidate) are
    serialized through the ``session`` lock. A second :meth:`prompt` while one
    is generating fails immediately with :class:`ChatSessionBusyError`.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        stack: ResourceStack,
        *,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._backend = backend
        self._stack = stack
        self._locks: KeyedLock = stack.locks
        self._system_prompt = system_prompt
        self._on_change = on_change

        self._state = ChatSessionState()
        self._session: ChatSessionHandle | None = None
        self._completion_engine: CompletionEngine | None = None
        self._cancel_token: CancelToken | None = None
        self._pending_prompt: str | None = None
        self._in_progress: tuple[Segment, ...] = ()
        self._prompt_active = False
        # Most recently requested draft text; completions for anything else are stale.
        self._draft_request = ""

        stack.attach_dependent(self)

    @property
    def state(self) -> ChatSessionState:
        return self._state

    @property
    def system_prompt(self) -> str:
        return self._system_prompt

    # Session lifecycle ------------------------------------------------------

    async def create_session(self) -> ChatSessionState:
        """
        Build a new chat session on the loaded sequence.

        Any previous session is disposed first. History is cleared; the draft
        text survives and its completion is recomputed against the new
        session.

        Raises:
            InvalidStateError: If the sequence level is not loaded.
        """
        async with self._locks.hold(SESSION_LOCK):
            sequence = self._stack.require(ResourceLevel.SEQUENCE)
            await self._dispose_session()
            self._set_state(ChatSessionState(draft=DraftPrompt(self._draft_request, "")))

            try:
                await self._open_session(sequence)
            except Exception as e:
                logger.error(f"Failed to create chat session. {type(e).__name__}: {e}")
                await self._dispose_session()
                self._set_state(
                    ChatSessionState(draft=DraftPrompt(self._draft_request, ""), error=str(e)),
                )
                return self._state

            self._set_state(replace(self._state, loaded=True))
            logger.info("Chat session created")

        await self._complete_draft(self._draft_request)
        return self._state

    async def reset_chat_history(self, mark_loaded: bool = True) -> ChatSessionState:
        """
        Replace the session with a fresh one on the same sequence.

        History and the whole draft are cleared. A generation in flight is
        cancelled and allowed to settle before the session is replaced.

        Parameters:
            mark_loaded (bool): Mark the session loaded afterwards; when False the previous ``loaded`` flag is kept.

        Raises:
            InvalidStateError: If the sequence level is not loaded.
        """
        self._stack.require(ResourceLevel.SEQUENCE)
        self.stop_active_prompt()
        async with self._locks.hold(SESSION_LOCK):
            sequence = self._stack.require(ResourceLevel.SEQUENCE)
            loaded = True if mark_loaded else self._state.loaded
            await self._dispose_session()
            self._draft_request = ""
            self._set_state(ChatSessionState())

            try:
                await self._open_session(sequence)
            except Exception as e:
                logger.error(f"Failed to reset chat session. {type(e).__name__}: {e}")
                await self._dispose_session()
                self._set_state(ChatSessionState(error=str(e)))
                return self._state

            self._set_state(ChatSessionState(loaded=loaded))
            logger.info("Chat history reset")
            return self._state

    async def invalidate(self, reason: str) -> None:
        """
        Drop the session because the sequence beneath it is going away.

        Fires the cancel token of an active prompt first, then waits for the
        prompt to settle before disposing the session. The draft text is kept
        so it can be completed again once a new session exists.
        """
        self.stop_active_prompt()
        async with self._locks.hold(SESSION_LOCK):
            if self._session is not None:
                logger.info(f"Invalidating chat session ({reason})")
                await self._dispose_session()
            unloaded = ChatSessionState(draft=DraftPrompt(self._draft_request, ""))
            if self._state != unloaded:
                self._set_state(unloaded)

    async def _open_session(self, sequence: Any) -> None:
        session = await self._backend.create_session(sequence, self._system_prompt)
        self._session = session
        self._completion_engine = session.create_completion_engine(
            on_generation=self._on_draft_generation,
        )
        session.on_dispose(lambda: self._on_backend_dispose(session))

    async def _dispose_session(self) -> None:
        session = self._session
        self._session = None
        self._completion_engine = None
        self._cancel_token = None
        self._pending_prompt = None
        self._in_progress = ()
        if session is None:
            return
        try:
            await session.dispose()
        except Exception:
            logger.exception("Failed to dispose chat session")

    def _on_backend_dispose(self, session: ChatSessionHandle) -> None:
        if session is not self._session:
            return
        logger.warning("Chat session was disposed by the backend")
        if self._cancel_token is not None:
            self._cancel_token.cancel()
        self._session = None
        self._completion_engine = None
        self._set_state(ChatSessionState(draft=DraftPrompt(self._draft_request, "")))

    # Prompting --------------------------------------------------------------

    async def prompt(self, message: str) -> str:
        """
        Send ``message`` and stream the response into the visible history.

        The user message shows up in the history immediately; the response is
        republished after every chunk. Cancellation through
        :meth:`stop_active_prompt` ends the call normally with the truncated
        response.

        Returns:
            str: The response text (partial when the prompt was stopped).

        Raises:
            InvalidStateError: If no session is loaded.
            ChatSessionBusyError: If another prompt is still generating.
            GenerationError: If the backend fails while generating.
        """
        if not self._state.loaded:
            raise InvalidStateError("Chat session is not loaded")
        if self._prompt_active or self._state.generating:
            raise ChatSessionBusyError("A prompt is already being generated")

        self._prompt_active = True
        try:
            async with self._locks.hold(SESSION_LOCK):
                return await self._run_prompt(message)
        finally:
            self._prompt_active = False

    async def _run_prompt(self, message: str) -> str:
        session = self._session
        if session is None or not self._state.loaded:
            raise InvalidStateError("Chat session is not loaded")

        token = CancelToken()
        self._cancel_token = token
        self._in_progress = ()
        self._pending_prompt = message
        self._set_state(
            replace(
                self._state,
                generating=True,
                history=project_history(session.get_transcript(), message),
            ),
        )

        def _on_chunk(chunk: GenerationChunk) -> None:
            if self._cancel_token is not token:
                return
            self._in_progress = merge(self._in_progress, segment_from_chunk(chunk))
            self._set_state(
                replace(
                    self._state,
                    history=project_history(session.get_transcript(), message, self._in_progress),
                ),
            )

        logger.info(f"Generating response ({len(message)} chars prompt)")
        call = asyncio.ensure_future(session.prompt(message, cancel_token=token, on_chunk=_on_chunk))
        try:
            response = await asyncio.shield(call)
        except GenerationAborted:
            response = "".join(
                segment.text for segment in self._in_progress if isinstance(segment, TextSegment)
            )
            logger.info("Generation aborted")
        except Exception as e:
            logger.error(f"Error while generating. {type(e).__name__}: {e}")
            self._finish_generation(session)
            if isinstance(e, GenerationError):
                raise
            raise GenerationError(str(e)) from e
        except BaseException:
            # The backend may still be generating on a worker thread; stop it and
            # wait for it before the session lock is released.
            token.cancel()
            try:
                await self._settle(call)
            finally:
                self._finish_generation(session)
            raise

        self._finish_generation(session)
        await self._complete_draft(self._draft_request)
        return response

    async def _settle(self, call: asyncio.Future[str]) -> None:
        try:
            await call
        except GenerationAborted:
            logger.info("Generation aborted after the prompt was cancelled")
        except Exception as e:
            logger.warning(f"Generation failed after the prompt was cancelled. {type(e).__name__}: {e}")

    def _finish_generation(self, session: ChatSessionHandle) -> None:
        self._cancel_token = None
        self._pending_prompt = None
        self._in_progress = ()
        history = project_history(session.get_transcript()) if session is self._session else ()
        self._set_state(replace(self._state, generating=False, history=history))

    def stop_active_prompt(self) -> None:
        """Signal the running prompt to stop. Returns immediately."""
        if self._cancel_token is not None:
            self._cancel_token.cancel()

    # Draft completion -------------------------------------------------------

    async def set_draft_prompt(self, prompt: str) -> DraftPrompt:
        """
        Update the draft text and compute its completion.

        The result is only committed while ``prompt`` is still the most
        recently requested draft; completions for superseded text are
        dropped. No-op when no completion engine is bound.
        """
        if self._completion_engine is None:
            return self._state.draft
        self._draft_request = prompt
        await self._complete_draft(prompt)
        return self._state.draft

    async def _complete_draft(self, prompt: str) -> None:
        engine = self._completion_engine
        if engine is None:
            return
        try:
            completion = await engine.complete(prompt) if prompt else ""
        except Exception as e:
            logger.warning(f"Draft completion failed. {type(e).__name__}: {e}")
            completion = ""
        self._commit_draft(engine, prompt, completion)

    def _on_draft_generation(self, prompt: str, completion: str) -> None:
        engine = self._completion_engine
        if engine is not None:
            self._commit_draft(engine, prompt, completion)

    def _commit_draft(self, engine: CompletionEngine, prompt: str, completion: str) -> None:
        if engine is not self._completion_engine or prompt != self._draft_request:
            return
        draft = DraftPrompt(prompt, completion)
        if draft != self._state.draft:
            self._set_state(replace(self._state, draft=draft))

    def _set_state(self, state: ChatSessionState) -> None:
        self._state = state
        if self._on_change is not None:
            self._on_change()
