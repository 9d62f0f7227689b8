from chatstack.parser.base import THOUGHT_SEGMENT, BaseThinkingParser
from chatstack.parser.factory import (
    PARSER_REGISTRY,
    DeepSeekR1ThinkingParser,
    Glm4MoEThinkingParser,
    MinimaxThinkingParser,
    ParserFactory,
    Qwen3ThinkingParser,
)

__all__ = [
    "THOUGHT_SEGMENT",
    "BaseThinkingParser",
    "PARSER_REGISTRY",
    "DeepSeekR1ThinkingParser",
    "Glm4MoEThinkingParser",
    "MinimaxThinkingParser",
    "ParserFactory",
    "Qwen3ThinkingParser",
]
