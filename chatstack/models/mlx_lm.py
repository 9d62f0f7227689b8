"""
MLX inference backend.

This module implements the backend protocol on top of ``mlx-lm``: the engine
loads weights, a model opens contexts, a context hands out a sequence that
owns the KV prompt cache, and a chat session streams responses into that
cache from a worker thread.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from collections.abc import Callable
from contextlib import redirect_stderr, redirect_stdout
import gc
import os
from pathlib import Path
import threading
from typing import Any

import mlx.core as mx
from loguru import logger
from mlx_lm.generate import stream_generate
from mlx_lm.models.cache import make_prompt_cache
from mlx_lm.sample_utils import make_logits_processors, make_sampler
from mlx_lm.utils import load

from ..const import (
    DEFAULT_COMPLETION_MAX_TOKENS,
    DEFAULT_CONTEXT_LENGTH,
    DEFAULT_MAX_TOKENS,
    DEFAULT_REASONING_PARSER,
)
from ..core.aggregator import merge, segment_from_chunk
from ..core.backend_protocol import (
    DisposeCallback,
    GenerationChunk,
    ProgressCallback,
    TranscriptEntry,
)
from ..core.cancellation import CancelToken
from ..core.errors import GenerationAborted, InvalidStateError
from ..core.state import Segment, TextSegment
from ..parser import ParserFactory
from ..parser.factory import THINKING_OPEN

DEFAULT_TEMPERATURE = float(os.getenv("DEFAULT_TEMPERATURE", "0.7"))
DEFAULT_TOP_P = float(os.getenv("DEFAULT_TOP_P", "0.95"))
DEFAULT_TOP_K = int(os.getenv("DEFAULT_TOP_K", "20"))
DEFAULT_MIN_P = float(os.getenv("DEFAULT_MIN_P", "0.0"))
DEFAULT_SEED = int(os.getenv("DEFAULT_SEED", "0"))
DEFAULT_REPETITION_PENALTY = float(os.getenv("DEFAULT_REPETITION_PENALTY", "1.0"))
DEFAULT_TRUST_REMOTE_CODE = os.getenv("DEFAULT_TRUST_REMOTE_CODE", "false").lower() == "true"

# Number of (prefix, completion) pairs remembered per completion engine
COMPLETION_CACHE_SIZE = 64


class _DisposeHooks:
    """Dispose bookkeeping shared by every handle."""

    def __init__(self) -> None:
        self._dispose_callbacks: list[DisposeCallback] = []
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_dispose(self, callback: DisposeCallback) -> None:
        self._dispose_callbacks.append(callback)

    def _mark_disposed(self) -> bool:
        """Flip the disposed flag and fire the callbacks. Returns False if already disposed."""
        if self._disposed:
            return False
        self._disposed = True
        callbacks, self._dispose_callbacks = self._dispose_callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Dispose callback failed")
        return True


class MlxEngine(_DisposeHooks):
    """Loads models onto the default MLX device."""

    def __init__(self, *, context_length: int, trust_remote_code: bool) -> None:
        super().__init__()
        self.device = str(mx.default_device())
        self.context_length = context_length
        self.trust_remote_code = trust_remote_code

    def _load_weights(self, path: str) -> tuple[Any, Any]:
        # huggingface_hub and tqdm write progress to stdout/stderr, which can
        # raise BrokenPipeError when the server's streams are closed.
        with (
            Path(os.devnull).open("w") as _devnull,
            redirect_stdout(_devnull),
            redirect_stderr(_devnull),
        ):
            model, tokenizer, *_ = load(
                path,
                lazy=False,
                tokenizer_config={"trust_remote_code": self.trust_remote_code},
            )
        return model, tokenizer

    async def load_model(self, path: str, on_progress: ProgressCallback | None = None) -> MlxModel:
        """
        Load weights and tokenizer from ``path`` in a worker thread.

        Raises:
            InvalidStateError: If the engine was disposed.
            ValueError: If the model or tokenizer cannot be loaded.
        """
        if self.disposed:
            raise InvalidStateError("Engine is disposed")
        if on_progress is not None:
            on_progress(0.0)
        try:
            model, tokenizer = await asyncio.to_thread(self._load_weights, path)
        except Exception as e:
            raise ValueError(f"Error loading model: {e}") from e
        if on_progress is not None:
            on_progress(1.0)
        logger.info(f"Loaded {path} on {self.device}")
        return MlxModel(path, model, tokenizer, context_length=self.context_length)

    async def dispose(self) -> None:
        if self._mark_disposed():
            mx.clear_cache()


def _prompt_opens_thinking(tokenizer: Any) -> bool:
    """True when the chat template already ends the generation prompt with ``<think>``."""
    try:
        rendered = tokenizer.apply_chat_template(
            [{"role": "user", "content": ""}],
            add_generation_prompt=True,
            tokenize=False,
        )
    except Exception as e:
        logger.debug(f"Could not render chat template. {type(e).__name__}: {e}")
        return False
    return isinstance(rendered, str) and rendered.rstrip().endswith(THINKING_OPEN)


class MlxModel(_DisposeHooks):
    """Loaded weights plus tokenizer.

    Generation from sessions and completion engines is serialized through
    ``generation_lock`` since they share the same weights.
    """

    def __init__(self, path: str, model: Any, tokenizer: Any, *, context_length: int) -> None:
        super().__init__()
        self.path = path
        self.model = model
        self.tokenizer = tokenizer
        self.model_type = str(getattr(model, "model_type", "")) or None
        self.context_length = context_length
        self.prompt_opens_thinking = _prompt_opens_thinking(tokenizer)
        self.generation_lock = threading.Lock()

    async def create_context(self) -> MlxContext:
        if self.disposed:
            raise InvalidStateError("Model is disposed")
        return MlxContext(self)

    async def dispose(self) -> None:
        if self._mark_disposed():
            self.model = None
            self.tokenizer = None
            gc.collect()
            mx.clear_cache()


class MlxContext(_DisposeHooks):
    def __init__(self, model: MlxModel) -> None:
        super().__init__()
        self.model = model

    def get_sequence(self) -> MlxSequence:
        if self.disposed:
            raise InvalidStateError("Context is disposed")
        return MlxSequence(self)

    async def dispose(self) -> None:
        if self._mark_disposed():
            mx.clear_cache()


class MlxSequence(_DisposeHooks):
    """KV prompt cache plus the tokens it currently holds."""

    def __init__(self, context: MlxContext) -> None:
        super().__init__()
        self.context = context
        self.cache: list[Any] | None = None
        self.tokens: list[int] = []

    @property
    def model(self) -> MlxModel:
        return self.context.model

    def reset_cache(self) -> None:
        self.cache = make_prompt_cache(self.model.model, self.model.context_length)
        self.tokens = []

    def drop_cache(self) -> None:
        """Forget the cache; the next generation starts from an empty one."""
        self.cache = None
        self.tokens = []

    def tokens_to_feed(self, tokens: list[int]) -> list[int]:
        """Return the suffix of ``tokens`` not yet in the cache, resetting it when the prefix differs."""
        cached = self.tokens
        if self.cache is not None and len(cached) < len(tokens) and tokens[: len(cached)] == cached:
            return tokens[len(cached) :]
        self.reset_cache()
        return tokens

    def record(self, tokens: list[int]) -> None:
        """Remember which tokens ended up in the cache after a generation."""
        offset = getattr(self.cache[0], "offset", None) if self.cache else None
        if offset is None or offset > self.model.context_length or offset > len(tokens):
            self.reset_cache()
            return
        self.tokens = tokens[:offset]

    async def dispose(self) -> None:
        if self._mark_disposed():
            self.cache = None
            self.tokens = []


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return "".join(
        part if isinstance(part, str) else part.text
        for part in content
        if isinstance(part, (str, TextSegment))
    )


class MlxChatSession(_DisposeHooks):
    """Chat session bound to one sequence.

    The transcript gains the user entry and the model entry when a prompt
    settles, including when it was cancelled or failed part-way.
    """

    def __init__(
        self,
        sequence: MlxSequence,
        system_prompt: str,
        *,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        completion_max_tokens: int = DEFAULT_COMPLETION_MAX_TOKENS,
        reasoning_parser: str | None = DEFAULT_REASONING_PARSER,
    ) -> None:
        super().__init__()
        self.sequence = sequence
        self.max_tokens = max_tokens
        self.completion_max_tokens = completion_max_tokens
        self.reasoning_parser = reasoning_parser
        self._transcript: list[TranscriptEntry] = [TranscriptEntry("system", system_prompt)]

    @property
    def model(self) -> MlxModel:
        return self.sequence.model

    def get_transcript(self) -> list[TranscriptEntry]:
        return list(self._transcript)

    def _messages(self) -> list[dict[str, str]]:
        return [
            {"role": "assistant" if entry.role == "model" else entry.role, "content": _message_text(entry.content)}
            for entry in self._transcript
        ]

    def _ensure_open(self) -> None:
        if self.disposed or self.sequence.disposed:
            raise InvalidStateError("Chat session is disposed")

    def _stream(
        self,
        tokens: list[int],
        cancel_token: CancelToken,
        emit: Callable[[GenerationChunk], None],
    ) -> bool:
        """Run generation on the worker thread. Returns True when cancelled."""
        parser = ParserFactory.create_for_model(
            self.model.model_type,
            self.reasoning_parser,
            prompt_opens_thinking=self.model.prompt_opens_thinking,
        )
        sequence = self.sequence
        generated: list[int] = []
        aborted = False
        recorded = False

        with self.model.generation_lock:
            try:
                prompt = sequence.tokens_to_feed(tokens)
                mx.random.seed(DEFAULT_SEED)
                sampler = make_sampler(
                    temp=DEFAULT_TEMPERATURE,
                    top_p=DEFAULT_TOP_P,
                    top_k=DEFAULT_TOP_K,
                    min_p=DEFAULT_MIN_P,
                )
                logits_processors = make_logits_processors(repetition_penalty=DEFAULT_REPETITION_PENALTY)
                for response in stream_generate(
                    self.model.model,
                    self.model.tokenizer,
                    prompt,
                    sampler=sampler,
                    max_tokens=self.max_tokens,
                    prompt_cache=sequence.cache,
                    logits_processors=logits_processors,
                ):
                    if cancel_token.cancelled:
                        aborted = True
                        break
                    generated.append(response.token)
                    chunks = parser.parse_stream(response.text) if parser else [GenerationChunk(response.text)]
                    for chunk in chunks:
                        emit(chunk)
                if parser is not None:
                    for chunk in parser.finish():
                        emit(chunk)
                sequence.record(tokens + generated)
                recorded = True
            finally:
                # The cache may hold tokens that were never recorded.
                if not recorded:
                    sequence.drop_cache()

        return aborted

    async def prompt(
        self,
        text: str,
        *,
        cancel_token: CancelToken,
        on_chunk: Callable[[GenerationChunk], None],
    ) -> str:
        """
        Stream a response to ``text``.

        Chunks are produced on a worker thread and delivered to ``on_chunk``
        on the event loop, in order, before this coroutine returns.

        Raises:
            GenerationAborted: If ``cancel_token`` fired before or during generation.
            InvalidStateError: If the session or its sequence was disposed.
        """
        self._ensure_open()
        loop = asyncio.get_running_loop()
        segments: tuple[Segment, ...] = ()

        def _deliver(chunk: GenerationChunk) -> None:
            nonlocal segments
            segments = merge(segments, segment_from_chunk(chunk))
            on_chunk(chunk)

        def _emit(chunk: GenerationChunk) -> None:
            loop.call_soon_threadsafe(_deliver, chunk)

        aborted = cancel_token.cancelled
        try:
            if not aborted:
                tokens = list(
                    self.model.tokenizer.apply_chat_template(
                        [*self._messages(), {"role": "user", "content": text}],
                        add_generation_prompt=True,
                    ),
                )
                aborted = await asyncio.to_thread(self._stream, tokens, cancel_token, _emit)
        finally:
            self._transcript.append(TranscriptEntry("user", text))
            self._transcript.append(TranscriptEntry("model", segments))
        if aborted:
            raise GenerationAborted("generation was cancelled")
        return "".join(segment.text for segment in segments if isinstance(segment, TextSegment))

    def _complete_blocking(self, prefix: str, max_tokens: int) -> str:
        """Greedy single-line continuation of ``prefix`` as the next user message."""
        tokenizer = self.model.tokenizer
        tokens = tokenizer.apply_chat_template(
            [*self._messages(), {"role": "user", "content": prefix}],
            add_generation_prompt=False,
            continue_final_message=True,
        )
        completion = ""
        with self.model.generation_lock:
            for response in stream_generate(
                self.model.model,
                tokenizer,
                list(tokens),
                sampler=make_sampler(temp=0.0),
                max_tokens=max_tokens,
                prompt_cache=make_prompt_cache(self.model.model),
            ):
                completion += response.text
                if "\n" in completion:
                    completion = completion.split("\n", 1)[0]
                    break
        return completion

    def create_completion_engine(
        self,
        *,
        on_generation: Callable[[str, str], None] | None = None,
    ) -> MlxCompletionEngine:
        return MlxCompletionEngine(self, max_tokens=self.completion_max_tokens, on_generation=on_generation)

    async def dispose(self) -> None:
        self._mark_disposed()


class MlxCompletionEngine:
    """Draft autocompletion bound to one chat session.

    Results are cached per prefix; a longer prefix that follows a cached
    completion is answered from the cache without generating.
    """

    def __init__(
        self,
        session: MlxChatSession,
        *,
        max_tokens: int = DEFAULT_COMPLETION_MAX_TOKENS,
        on_generation: Callable[[str, str], None] | None = None,
    ) -> None:
        self._session = session
        self._max_tokens = max_tokens
        self._on_generation = on_generation
        self._cache: OrderedDict[str, str] = OrderedDict()

    def _lookup(self, prefix: str) -> str | None:
        if prefix in self._cache:
            self._cache.move_to_end(prefix)
            return self._cache[prefix]
        for cached_prefix, completion in reversed(self._cache.items()):
            full = cached_prefix + completion
            if prefix.startswith(cached_prefix) and full.startswith(prefix) and len(full) > len(prefix):
                return full[len(prefix) :]
        return None

    async def complete(self, prefix: str) -> str:
        if not prefix.strip() or self._session.disposed:
            return ""
        cached = self._lookup(prefix)
        if cached is not None:
            return cached

        completion = await asyncio.to_thread(self._session._complete_blocking, prefix, self._max_tokens)
        self._cache[prefix] = completion
        while len(self._cache) > COMPLETION_CACHE_SIZE:
            self._cache.popitem(last=False)
        if self._on_generation is not None:
            self._on_generation(prefix, completion)
        return completion


class MlxBackend:
    """Inference backend entry point for ``mlx-lm``."""

    def __init__(
        self,
        *,
        context_length: int = DEFAULT_CONTEXT_LENGTH,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        completion_max_tokens: int = DEFAULT_COMPLETION_MAX_TOKENS,
        reasoning_parser: str | None = DEFAULT_REASONING_PARSER,
        trust_remote_code: bool = DEFAULT_TRUST_REMOTE_CODE,
    ) -> None:
        self.context_length = context_length
        self.max_tokens = max_tokens
        self.completion_max_tokens = completion_max_tokens
        self.reasoning_parser = reasoning_parser
        self.trust_remote_code = trust_remote_code

    async def load_engine(self) -> MlxEngine:
        engine = MlxEngine(context_length=self.context_length, trust_remote_code=self.trust_remote_code)
        logger.info(f"MLX engine ready on {engine.device}")
        return engine

    async def create_session(self, sequence: MlxSequence, system_prompt: str) -> MlxChatSession:
        if sequence.disposed:
            raise InvalidStateError("Sequence is disposed")
        return MlxChatSession(
            sequence,
            system_prompt,
            max_tokens=self.max_tokens,
            completion_max_tokens=self.completion_max_tokens,
            reasoning_parser=self.reasoning_parser,
        )
