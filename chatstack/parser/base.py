"""Base parser that splits streamed text into plain and reasoning chunks."""

from __future__ import annotations

from datetime import datetime, timezone

from ..core.backend_protocol import GenerationChunk

THOUGHT_SEGMENT = "thought"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _partial_marker_length(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``marker``."""
    for size in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class BaseThinkingParser:
    """Streaming parser for ``<open>reasoning</close>`` style outputs.

    Text inside the markers is emitted as ``thought`` segment chunks; the
    first one carries the segment start time and the one emitted when the
    closing marker arrives carries the end time. Markers split across two
    stream chunks are held back until they can be decided.

    With ``start_in_thinking`` the stream is assumed to begin inside the
    reasoning span, for chat templates that already put the opening marker
    in the generation prompt. An opening marker the model repeats anyway at
    the very start is dropped.
    """

    thinking_open = "<think>"
    thinking_close = "</think>"

    def __init__(self, *, start_in_thinking: bool = False) -> None:
        self.start_in_thinking = start_in_thinking
        self.reset()

    @property
    def in_thinking(self) -> bool:
        return self._in_thinking

    def reset(self) -> None:
        self._buffer = ""
        self._in_thinking = self.start_in_thinking
        self._started_at: datetime | None = _utcnow() if self.start_in_thinking else None
        self._at_start = self.start_in_thinking
        self._seen_text = False

    def _thought(self, text: str, *, end: bool = False) -> GenerationChunk:
        return GenerationChunk(
            text=text,
            segment_type=THOUGHT_SEGMENT,
            segment_start_time=self._started_at,
            segment_end_time=_utcnow() if end else None,
        )

    def _strip_repeated_open(self) -> bool:
        """Drop a leading opening marker. Returns False while the start is still undecided."""
        head = self._buffer.lstrip()
        if head.startswith(self.thinking_open):
            self._buffer = head[len(self.thinking_open) :]
        elif not head or self.thinking_open.startswith(head):
            return False
        self._at_start = False
        return True

    def parse_stream(self, text: str | None) -> list[GenerationChunk]:
        """
        Feed one streamed piece of text.

        Parameters:
            text (str | None): Newly generated text; ``None`` or empty makes no progress.

        Returns:
            list[GenerationChunk]: Chunks that can be emitted so far, in order.
        """
        if not text:
            return []
        self._seen_text = True
        self._buffer += text
        chunks: list[GenerationChunk] = []
        if self._at_start and not self._strip_repeated_open():
            return chunks

        while self._buffer:
            marker = self.thinking_close if self._in_thinking else self.thinking_open
            index = self._buffer.find(marker)
            if index >= 0:
                before = self._buffer[:index]
                self._buffer = self._buffer[index + len(marker) :]
                if self._in_thinking:
                    chunks.append(self._thought(before, end=True))
                    self._in_thinking = False
                    self._started_at = None
                else:
                    if before:
                        chunks.append(GenerationChunk(text=before))
                    self._in_thinking = True
                    self._started_at = _utcnow()
                continue

            keep = _partial_marker_length(self._buffer, marker)
            emit = self._buffer[: len(self._buffer) - keep]
            self._buffer = self._buffer[len(self._buffer) - keep :]
            if emit:
                chunks.append(self._thought(emit) if self._in_thinking else GenerationChunk(text=emit))
            break

        return chunks

    def finish(self) -> list[GenerationChunk]:
        """Flush held-back text at the end of the stream, closing an open thought."""
        remainder, self._buffer = self._buffer, ""
        if self._in_thinking:
            self._in_thinking = False
            chunks = [self._thought(remainder, end=True)] if self._seen_text else []
            self._started_at = None
            return chunks
        return [GenerationChunk(text=remainder)] if remainder else []
