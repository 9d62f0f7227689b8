"""Merge streamed generation chunks into a compact list of segments.

The visible chat history is always a projection of two inputs: the
authoritative session transcript and the in-progress buffer of the prompt
currently being generated. :func:`project_history` is that projection, and
it is used both while streaming and after completion, so the two views can
only differ by the buffer.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import replace

from .backend_protocol import GenerationChunk, TranscriptEntry
from .state import ChatItem, ModelItem, Segment, TextSegment, TypedSegment, UserItem


def merge(existing: Sequence[Segment], incoming: Segment) -> tuple[Segment, ...]:
    """
    Merge one incoming segment into an existing segment list.

    The input sequence is never modified; a new tuple is returned.

    Parameters:
        existing (Sequence[Segment]): Segments aggregated so far.
        incoming (Segment): Next segment from the stream.

    Returns:
        tuple[Segment, ...]: The merged segments, maximally compacted.
    """
    merged = tuple(existing)
    last = merged[-1] if merged else None

    if last is None or type(last) is not type(incoming):
        # An empty text chunk with nothing to attach to carries no information
        if isinstance(incoming, TextSegment) and incoming.text == "":
            return merged
        return (*merged, incoming)

    if isinstance(last, TextSegment) and isinstance(incoming, TextSegment):
        return (*merged[:-1], TextSegment(last.text + incoming.text))

    if (
        isinstance(last, TypedSegment)
        and isinstance(incoming, TypedSegment)
        and last.kind == incoming.kind
        and last.end_time is None
    ):
        return (
            *merged[:-1],
            replace(last, text=last.text + incoming.text, end_time=incoming.end_time),
        )

    return (*merged, incoming)


def merge_all(segments: Iterable[Segment], existing: Sequence[Segment] = ()) -> tuple[Segment, ...]:
    """Fold :func:`merge` over ``segments``."""
    merged = tuple(existing)
    for segment in segments:
        merged = merge(merged, segment)
    return merged


def segment_from_chunk(chunk: GenerationChunk) -> Segment:
    """Convert a backend chunk into the segment variant it belongs to."""
    if chunk.segment_type is None:
        return TextSegment(chunk.text)
    return TypedSegment(
        kind=chunk.segment_type,
        text=chunk.text,
        start_time=chunk.segment_start_time,
        end_time=chunk.segment_end_time,
    )


def _model_segments(content: str | Sequence[str | Segment]) -> tuple[Segment, ...]:
    if isinstance(content, str):
        return merge_all([TextSegment(content)])
    return merge_all(TextSegment(part) if isinstance(part, str) else part for part in content)


def project_history(
    transcript: Iterable[TranscriptEntry],
    pending_prompt: str | None = None,
    in_progress: Sequence[Segment] = (),
) -> tuple[ChatItem, ...]:
    """
    Build the visible chat history.

    System entries are hidden. When ``pending_prompt`` is given, the prompt
    being generated is appended as a user item, followed by the in-progress
    model item when the buffer is not empty.

    Parameters:
        transcript (Iterable[TranscriptEntry]): Authoritative transcript of the session.
        pending_prompt (str | None): Prompt currently being generated, if any.
        in_progress (Sequence[Segment]): Aggregated segments of the response so far.

    Returns:
        tuple[ChatItem, ...]: The history to publish.
    """
    history: list[ChatItem] = []
    for entry in transcript:
        if entry.role == "system":
            continue
        if entry.role == "user":
            history.append(UserItem(str(entry.content)))
        else:
            history.append(ModelItem(_model_segments(entry.content)))

    if pending_prompt is not None:
        history.append(UserItem(pending_prompt))
        if in_progress:
            history.append(ModelItem(tuple(in_progress)))

    return tuple(history)
