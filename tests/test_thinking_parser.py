"""Tests for the streaming reasoning parser."""

from __future__ import annotations

import pytest

from chatstack.parser import PARSER_REGISTRY, ParserFactory, Qwen3ThinkingParser, THOUGHT_SEGMENT
from chatstack.parser.base import BaseThinkingParser


def _feed(parser: BaseThinkingParser, pieces: list[str]) -> list:
    chunks = []
    for piece in pieces:
        chunks.extend(parser.parse_stream(piece))
    chunks.extend(parser.finish())
    return chunks


def test_plain_text_passes_through() -> None:
    chunks = _feed(Qwen3ThinkingParser(), ["Hello", " world"])
    assert [(chunk.text, chunk.segment_type) for chunk in chunks] == [("Hello", None), (" world", None)]


def test_thinking_span_becomes_thought_chunks() -> None:
    chunks = _feed(Qwen3ThinkingParser(), ["<think>Let me", " see</think>", "Answer"])

    thoughts = [chunk for chunk in chunks if chunk.segment_type == THOUGHT_SEGMENT]
    assert "".join(chunk.text for chunk in thoughts) == "Let me see"
    assert all(chunk.segment_start_time is not None for chunk in thoughts)
    assert thoughts[-1].segment_end_time is not None
    assert all(chunk.segment_end_time is None for chunk in thoughts[:-1])
    assert chunks[-1].text == "Answer"
    assert chunks[-1].segment_type is None


def test_markers_split_across_chunks_are_recognised() -> None:
    parser = Qwen3ThinkingParser()
    assert parser.parse_stream("<thi") == []
    chunks = _feed(Qwen3ThinkingParser(), ["<thi", "nk>idea</th", "ink>", "done"])
    assert [(chunk.text, chunk.segment_type) for chunk in chunks if chunk.text] == [
        ("idea", THOUGHT_SEGMENT),
        ("done", None),
    ]


def test_text_resembling_a_marker_prefix_is_released() -> None:
    chunks = _feed(Qwen3ThinkingParser(), ["a <", "b"])
    assert "".join(chunk.text for chunk in chunks) == "a <b"
    assert all(chunk.segment_type is None for chunk in chunks)


def test_finish_closes_an_open_thought() -> None:
    parser = Qwen3ThinkingParser()
    parser.parse_stream("<think>unfinished")
    closing = parser.finish()
    assert len(closing) == 1
    assert closing[0].segment_type == THOUGHT_SEGMENT
    assert closing[0].segment_end_time is not None
    assert not parser.in_thinking


def test_factory_registry() -> None:
    assert set(PARSER_REGISTRY) == {"qwen3", "deepseek_r1", "glm4_moe", "minimax"}
    assert ParserFactory.create_thinking_parser(None) is None
    with pytest.raises(ValueError, match="Unknown reasoning parser"):
        ParserFactory.create_thinking_parser("bogus")


def test_factory_infers_parser_from_model_type() -> None:
    assert isinstance(ParserFactory.create_for_model("qwen3_moe"), Qwen3ThinkingParser)
    assert ParserFactory.create_for_model("llama") is None
    manual = ParserFactory.create_for_model("llama", "deepseek_r1")
    assert type(manual).__name__ == "DeepSeekR1ThinkingParser"


def test_parser_started_in_thinking_splits_on_closing_marker() -> None:
    parser = ParserFactory.create_thinking_parser("deepseek_r1", start_in_thinking=True)
    assert parser.in_thinking

    chunks = _feed(parser, ["Let me think", "</think>", "Answer"])

    assert [(chunk.text, chunk.segment_type) for chunk in chunks] == [
        ("Let me think", THOUGHT_SEGMENT),
        ("", THOUGHT_SEGMENT),
        ("Answer", None),
    ]
    assert chunks[0].segment_start_time is not None
    assert chunks[1].segment_end_time is not None


def test_parser_started_in_thinking_drops_a_repeated_open_marker() -> None:
    parser = ParserFactory.create_thinking_parser("deepseek_r1", start_in_thinking=True)
    assert parser.parse_stream("\n<thi") == []

    chunks = _feed(parser, ["nk>plan</think>", "ok"])

    assert [(chunk.text, chunk.segment_type) for chunk in chunks if chunk.text] == [
        ("plan", THOUGHT_SEGMENT),
        ("ok", None),
    ]


def test_parser_started_in_thinking_without_output_emits_nothing() -> None:
    parser = ParserFactory.create_thinking_parser("deepseek_r1", start_in_thinking=True)
    assert parser.finish() == []
    assert not parser.in_thinking


def test_factory_uses_r1_parser_when_prompt_opens_thinking() -> None:
    parser = ParserFactory.create_for_model("qwen2", None, prompt_opens_thinking=True)
    assert type(parser).__name__ == "DeepSeekR1ThinkingParser"
    assert parser.in_thinking
    assert ParserFactory.create_for_model("qwen2") is None

    qwen3 = ParserFactory.create_for_model("qwen3", None, prompt_opens_thinking=True)
    assert isinstance(qwen3, Qwen3ThinkingParser)
    assert qwen3.in_thinking
