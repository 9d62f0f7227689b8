"""Configuration parsing utilities."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
import re
from typing import Any

from loguru import logger
import yaml

from .const import (
    DEFAULT_BIND_HOST,
    DEFAULT_CATALOG,
    DEFAULT_COMPLETION_MAX_TOKENS,
    DEFAULT_CONTEXT_LENGTH,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_MAX_TOKENS,
    DEFAULT_MODELS_DIR,
    DEFAULT_PORT,
    DEFAULT_REASONING_PARSER,
    DEFAULT_SYSTEM_PROMPT,
)
from .core.model_catalog import CatalogModel
from .parser import PARSER_REGISTRY

PORT_MIN = 1024
PORT_MAX = 65535


class ConfigError(RuntimeError):
    """Raised when the configuration file is invalid."""


_slug_pattern = re.compile(r"^[a-z0-9]+(?:[-_.][a-z0-9]+)*$", re.IGNORECASE)


def _ensure_slug(value: str, *, field_name: str) -> str:
    """Validate that ``value`` is already a compliant slug without altering it."""
    candidate = value.strip()
    if not candidate:
        raise ConfigError(f"{field_name} cannot be empty")
    if not _slug_pattern.fullmatch(candidate):
        raise ConfigError(
            f"{field_name} must be alphanumeric with optional hyphen/underscore/dot separators",
        )
    return candidate


def _default_catalog() -> list[CatalogModel]:
    return [CatalogModel(**entry) for entry in DEFAULT_CATALOG]  # type: ignore[arg-type]


@dataclass(slots=True)
class ChatStackConfig:
    """Top-level configuration, from defaults or a YAML file."""

    host: str = DEFAULT_BIND_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: str | None = DEFAULT_LOG_FILE
    no_log_file: bool = False
    models_dir: Path = field(default_factory=lambda: DEFAULT_MODELS_DIR)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    context_length: int = DEFAULT_CONTEXT_LENGTH
    max_tokens: int = DEFAULT_MAX_TOKENS
    completion_max_tokens: int = DEFAULT_COMPLETION_MAX_TOKENS
    reasoning_parser: str | None = DEFAULT_REASONING_PARSER
    autoload_model: str | None = None
    catalog: list[CatalogModel] = field(default_factory=_default_catalog)
    source_path: Path | None = None

    def __post_init__(self) -> None:
        """
        Normalize defaults.

        Converts the log level to uppercase and expands any user (~) in the
        models directory.
        """
        self.log_level = self.log_level.upper()
        self.models_dir = Path(self.models_dir).expanduser()


def _load_yaml(path: Path) -> dict[str, Any]:
    """
    Parse a YAML file and return its top-level mapping.

    Raises:
        ConfigError: If the file does not exist, cannot be parsed, or the document root is not a mapping.
    """
    try:
        with path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config '{path}': {e}") from e

    if not isinstance(loaded, dict):
        raise ConfigError("Config root must be a mapping")
    return loaded


_CATALOG_FIELDS = {f.name for f in fields(CatalogModel)}


def _build_catalog(raw_models: list[dict[str, Any]] | None) -> list[CatalogModel]:
    """
    Construct catalog entries from raw YAML mappings.

    Each entry needs an ``id``; ``name`` defaults to the id and ``path`` to
    the id (relative to the models directory).

    Raises:
        ConfigError: If an entry is not a mapping, lacks an id, has unknown keys, or repeats an id.
    """
    catalog: list[CatalogModel] = []
    seen: set[str] = set()
    for idx, raw_model in enumerate(raw_models or [], start=1):
        if not isinstance(raw_model, dict):
            raise ConfigError(f"Model entry #{idx} must be a mapping")
        if "id" not in raw_model:
            raise ConfigError(f"Model entry #{idx} is missing required 'id'")
        unknown = set(raw_model) - _CATALOG_FIELDS
        if unknown:
            raise ConfigError(f"Model entry #{idx} has unknown keys: {', '.join(sorted(unknown))}")

        model_id = _ensure_slug(str(raw_model["id"]), field_name="model id")
        if model_id in seen:
            raise ConfigError(f"Duplicate model id '{model_id}' detected")
        seen.add(model_id)

        payload = dict(raw_model)
        payload["id"] = model_id
        payload.setdefault("name", model_id)
        payload["path"] = str(payload.get("path") or model_id)
        tags = payload.get("tags") or []
        if not isinstance(tags, list):
            raise ConfigError(f"Model '{model_id}' tags must be a list")
        payload["tags"] = [str(tag) for tag in tags]
        if payload.get("context_length") is not None:
            payload["context_length"] = _coerce_int(payload["context_length"], f"{model_id}.context_length")
        catalog.append(CatalogModel(**payload))
    return catalog


def _coerce_int(value: Any, field_name: str, *, minimum: int = 1) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc
    if number < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return number


def load_config(config_path: Path | str | None = None) -> ChatStackConfig:
    """
    Load and validate the configuration.

    Parameters:
        config_path (Path | str | None): YAML file to read. ``None`` returns the built-in defaults.

    Returns:
        ChatStackConfig: The loaded and validated configuration.

    Raises:
        ConfigError: If the file is missing or any value is invalid.
    """
    if config_path is None:
        return ChatStackConfig()

    path = Path(config_path).expanduser()
    data = _load_yaml(path)

    port = _coerce_int(data.get("port", DEFAULT_PORT), "port", minimum=PORT_MIN)
    if port > PORT_MAX:
        raise ConfigError(f"port must be <= {PORT_MAX}")

    config = ChatStackConfig(
        host=str(data.get("host", DEFAULT_BIND_HOST)),
        port=port,
        log_level=str(data.get("log_level", DEFAULT_LOG_LEVEL)),
        log_file=data.get("log_file", DEFAULT_LOG_FILE),
        no_log_file=bool(data.get("no_log_file", False)),
        models_dir=Path(str(data.get("models_dir", DEFAULT_MODELS_DIR))),
        system_prompt=str(data.get("system_prompt", DEFAULT_SYSTEM_PROMPT)),
        context_length=_coerce_int(data.get("context_length", DEFAULT_CONTEXT_LENGTH), "context_length"),
        max_tokens=_coerce_int(data.get("max_tokens", DEFAULT_MAX_TOKENS), "max_tokens"),
        completion_max_tokens=_coerce_int(
            data.get("completion_max_tokens", DEFAULT_COMPLETION_MAX_TOKENS),
            "completion_max_tokens",
        ),
        reasoning_parser=data.get("reasoning_parser", DEFAULT_REASONING_PARSER),
        autoload_model=data.get("autoload_model"),
        source_path=path,
    )
    if config.reasoning_parser is not None and config.reasoning_parser not in PARSER_REGISTRY:
        raise ConfigError(
            f"Unknown reasoning_parser '{config.reasoning_parser}' (choose from {', '.join(sorted(PARSER_REGISTRY))})",
        )
    if "models" in data:
        config.catalog = _build_catalog(data["models"])

    logger.debug(f"Loaded config from {path} with {len(config.catalog)} catalog model(s)")
    return config
