"""Reasoning parser registry and factory."""

from __future__ import annotations

from .base import BaseThinkingParser

THINKING_OPEN = BaseThinkingParser.thinking_open
THINKING_CLOSE = BaseThinkingParser.thinking_close


class Qwen3ThinkingParser(BaseThinkingParser):
    """Parser for Qwen3 model's thinking response format."""


class DeepSeekR1ThinkingParser(BaseThinkingParser):
    """Parser for DeepSeek R1 and its distills, whose templates usually open the thought in the prompt."""


class Glm4MoEThinkingParser(BaseThinkingParser):
    """Parser for GLM4 model's thinking response format."""


class MinimaxThinkingParser(BaseThinkingParser):
    """Parser for MiniMax model's thinking response format."""


PARSER_REGISTRY: dict[str, type[BaseThinkingParser]] = {
    "qwen3": Qwen3ThinkingParser,
    "deepseek_r1": DeepSeekR1ThinkingParser,
    "glm4_moe": Glm4MoEThinkingParser,
    "minimax": MinimaxThinkingParser,
}

# model_type values reported by mlx-lm that imply a reasoning format
_MODEL_TYPE_DEFAULTS: dict[str, str] = {
    "qwen3": "qwen3",
    "qwen3_moe": "qwen3",
    "glm4_moe": "glm4_moe",
    "minimax": "minimax",
}

# R1 distills report their base architecture (qwen2, llama) as model_type;
# they are recognised by a chat template that opens the thought itself.
_PROMPT_OPENS_THINKING_DEFAULT = "deepseek_r1"


class ParserFactory:
    """Centralized construction of reasoning parsers."""

    @staticmethod
    def create_thinking_parser(name: str | None, *, start_in_thinking: bool = False) -> BaseThinkingParser | None:
        """
        Create the parser registered under ``name``.

        Returns:
            BaseThinkingParser | None: A fresh parser, or ``None`` when ``name`` is ``None``.

        Raises:
            ValueError: If ``name`` is not registered.
        """
        if name is None:
            return None
        try:
            parser_cls = PARSER_REGISTRY[name]
        except KeyError:
            choices = ", ".join(sorted(PARSER_REGISTRY))
            raise ValueError(f"Unknown reasoning parser '{name}' (choose from {choices})") from None
        return parser_cls(start_in_thinking=start_in_thinking)

    @staticmethod
    def create_for_model(
        model_type: str | None,
        manual_reasoning_parser: str | None = None,
        *,
        prompt_opens_thinking: bool = False,
    ) -> BaseThinkingParser | None:
        """
        Prefer an explicitly configured parser, else infer one from the model.

        ``prompt_opens_thinking`` means the rendered generation prompt already
        ends with the opening marker, so the stream starts inside the thought.
        """
        name = manual_reasoning_parser or _MODEL_TYPE_DEFAULTS.get(model_type or "")
        if name is None and prompt_opens_thinking:
            name = _PROMPT_OPENS_THINKING_DEFAULT
        return ParserFactory.create_thinking_parser(name, start_in_thinking=prompt_opens_thinking)
