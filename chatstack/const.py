"""Default values shared by the configuration layer, the CLI and the backend."""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_BIND_HOST = os.getenv("CHATSTACK_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.getenv("CHATSTACK_PORT", "8765"))
DEFAULT_LOG_LEVEL = os.getenv("CHATSTACK_LOG_LEVEL", "INFO")
DEFAULT_LOG_FILE = os.getenv("CHATSTACK_LOG_FILE", "logs/chatstack.log")
DEFAULT_CONFIG_PATH = Path(os.getenv("CHATSTACK_CONFIG", "~/.chatstack/config.yaml")).expanduser()
DEFAULT_MODELS_DIR = Path(os.getenv("CHATSTACK_MODELS_DIR", "models"))

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_CONTEXT_LENGTH = int(os.getenv("CHATSTACK_CONTEXT_LENGTH", "8192"))
DEFAULT_MAX_TOKENS = int(os.getenv("CHATSTACK_MAX_TOKENS", "4096"))
DEFAULT_COMPLETION_MAX_TOKENS = int(os.getenv("CHATSTACK_COMPLETION_MAX_TOKENS", "16"))
DEFAULT_REASONING_PARSER: str | None = os.getenv("CHATSTACK_REASONING_PARSER") or None

# Keys used by the per-resource lock registry. Order matters: an operation
# holding one key may only acquire keys that come after it.
LOCK_ORDER = ("engine", "model", "context", "sequence", "session")

DEFAULT_CATALOG: list[dict[str, object]] = [
    {
        "id": "deepseek-r1-distill-qwen-7b",
        "name": "DeepSeek R1 Distill Qwen 7B",
        "description": "Distilled version of Qwen optimized for general use",
        "path": "deepseek-r1-distill-qwen-7b",
        "size": "4.5 GB",
        "quantization": "4bit",
        "tags": ["chat", "reasoning"],
        "context_length": 8192,
        "source": "mlx-community/DeepSeek-R1-Distill-Qwen-7B-4bit",
    },
    {
        "id": "deepseek-r1-distill-llama-8b",
        "name": "DeepSeek R1 Distill Llama 8B",
        "description": "Llama based distillation with step-by-step reasoning",
        "path": "deepseek-r1-distill-llama-8b",
        "size": "5.1 GB",
        "quantization": "4bit",
        "tags": ["chat", "reasoning"],
        "context_length": 8192,
        "source": "mlx-community/DeepSeek-R1-Distill-Llama-8B-4bit",
    },
    {
        "id": "llama-3.1-8b",
        "name": "Llama 3.1 8B",
        "description": "General purpose instruction-tuned Llama",
        "path": "llama-3.1-8b",
        "size": "5.2 GB",
        "quantization": "4bit",
        "tags": ["chat"],
        "context_length": 8192,
        "source": "mlx-community/Meta-Llama-3.1-8B-Instruct-4bit",
    },
    {
        "id": "phi-4-14b",
        "name": "Phi 4 14B",
        "description": "Compact model with strong reasoning for its size",
        "path": "phi-4-14b",
        "size": "8.1 GB",
        "quantization": "4bit",
        "tags": ["chat", "reasoning"],
        "context_length": 8192,
        "source": "mlx-community/phi-4-4bit",
    },
    {
        "id": "mistral-nemo-12b",
        "name": "Mistral Nemo 12B",
        "description": "Multilingual instruction model",
        "path": "mistral-nemo-12b",
        "size": "7.3 GB",
        "quantization": "4bit",
        "tags": ["chat"],
        "context_length": 8192,
        "source": "mlx-community/Mistral-Nemo-Instruct-2407-4bit",
    },
]
