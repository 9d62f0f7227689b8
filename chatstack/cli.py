"""Command-line interface for chatstack.

``launch`` starts the server; ``models`` inspects the local catalog;
``status`` and ``ask`` talk to a running server over HTTP.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
import json
from pathlib import Path
import sys
from typing import Any, Literal

import click
import httpx
from loguru import logger

from .config import ChatStackConfig, ConfigError, load_config
from .const import DEFAULT_BIND_HOST, DEFAULT_CONFIG_PATH, DEFAULT_PORT
from .core.model_catalog import ModelCatalog
from .parser import PARSER_REGISTRY
from .server import start
from .utils.network import base_url, is_port_available
from .version import __version__


class UpperChoice(click.Choice[str]):
    """Case-insensitive choice type that returns the canonical option value."""

    def normalize_choice(self, choice: str | None, ctx: click.Context | None) -> str | None:  # type: ignore[override]
        if choice is None:
            return None
        upperchoice = choice.upper()
        for opt in self.choices:
            if opt.upper() == upperchoice:
                return opt
        self.fail(
            f"Invalid choice: {choice}. (choose from {', '.join(self.choices)})",
            param=None,
            ctx=ctx,
        )
        return None


# Basic console logging for the CLI; ``launch`` reconfigures it from the config.
logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
    colorize=True,
    level="INFO",
)

LEVEL_NAMES = ("engine", "model", "context", "sequence")

_FLASH_STYLES: dict[str, tuple[str, str]] = {
    "info": ("[info]", "cyan"),
    "success": ("[ok]", "green"),
    "warning": ("[warn]", "yellow"),
    "error": ("[err]", "red"),
}


def _flash(message: str, tone: Literal["info", "success", "warning", "error"] = "info") -> None:
    prefix, color = _FLASH_STYLES.get(tone, _FLASH_STYLES["info"])
    click.echo(click.style(f"{prefix} {message}", fg=color))


@click.group()
@click.version_option(
    version=__version__,
    message="%(prog)s - local LLM chat runtime, version %(version)s",
)
def cli() -> None:
    """chatstack command group."""


def _load_config_or_fail(config_path: str | None) -> ChatStackConfig:
    """
    Load the config file, or the defaults when none is given.

    A missing file at the default location is not an error; a missing file
    that was named explicitly is.

    Raises:
        click.ClickException: If the configuration cannot be loaded.
    """
    if config_path is None and not DEFAULT_CONFIG_PATH.exists():
        return load_config(None)
    try:
        return load_config(config_path or DEFAULT_CONFIG_PATH)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _call_api(
    url: str,
    method: str,
    path: str,
    *,
    json_body: object | None = None,
    timeout: float | None = 5.0,
) -> dict[str, Any]:
    """
    Call the server API and return its parsed JSON payload.

    Raises:
        click.ClickException: If the server is unreachable or answers with an error status.
    """
    target = f"{url.rstrip('/')}{path}"
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.request(method, target, json=json_body)
    except httpx.HTTPError as e:
        raise click.ClickException(f"Failed to contact server at {url}: {e}") from e

    if resp.status_code >= 400:
        try:
            payload: Any = resp.json()
            message = payload.get("error", {}).get("message") or payload.get("detail") or payload
        except (ValueError, AttributeError):
            message = resp.text
        raise click.ClickException(f"Server responded {resp.status_code}: {message}")

    try:
        payload = resp.json()
    except ValueError:
        return {"raw": resp.text}
    return payload if isinstance(payload, dict) else {"raw": payload}


def _server_option(func: Any) -> Any:
    func = click.option(
        "--url",
        default=None,
        help="Base URL of a running server (defaults to the configured host and port).",
    )(func)
    return click.option("--config", "config_path", default=None, help="Path to the config file.")(func)


def _resolve_url(config_path: str | None, url: str | None) -> str:
    if url:
        return url
    config = _load_config_or_fail(config_path)
    return base_url(config.host, config.port)


def _print_state(state: dict[str, Any]) -> None:
    click.echo(f"version: {state.get('app_version')}")
    click.echo(f"model:   {state.get('selected_model_path') or '-'}")
    for name in LEVEL_NAMES:
        level = state.get(name) or {}
        line = f"  {name:<9} {level.get('status')}"
        if level.get("status") == "loading" and level.get("progress") is not None:
            line += f" ({level['progress']:.0%})"
        if level.get("error"):
            line += f" - {level['error']}"
        click.echo(line)
    chat = state.get("chat_session", {})
    flags = "generating" if chat.get("generating") else "idle"
    click.echo(f"  {'session':<9} {'loaded' if chat.get('loaded') else 'unloaded'}, {flags}")
    if chat.get("error"):
        click.echo(f"            {chat['error']}")


@cli.command(help="Start the chatstack server")
@click.option("--config", "config_path", default=None, help="Path to a YAML config file.")
@click.option("--host", default=None, help=f"Host to bind (default {DEFAULT_BIND_HOST}).")
@click.option("--port", default=None, type=click.IntRange(1024, 65535), help=f"Port to bind (default {DEFAULT_PORT}).")
@click.option("--model", "autoload_model", default=None, help="Catalog id or model path to load at startup.")
@click.option("--models-dir", default=None, type=click.Path(file_okay=False), help="Directory holding downloaded models.")
@click.option("--system-prompt", default=None, help="System prompt of new chat sessions.")
@click.option("--context-length", default=None, type=click.IntRange(1), help="KV cache size in tokens.")
@click.option("--max-tokens", default=None, type=click.IntRange(1), help="Maximum tokens per response.")
@click.option(
    "--reasoning-parser",
    default=None,
    type=click.Choice(list(PARSER_REGISTRY.keys())),
    help="Reasoning parser to use instead of auto-detection.",
)
@click.option("--log-file", default=None, help="Path to log file (default logs/chatstack.log).")
@click.option("--no-log-file", is_flag=True, help="Disable file logging entirely.")
@click.option(
    "--log-level",
    default=None,
    type=UpperChoice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help="Set the logging level. Default is INFO.",
)
def launch(config_path: str | None, **overrides: Any) -> None:
    """Start the server; command-line options override the config file."""
    config = _load_config_or_fail(config_path)
    changes = {key: value for key, value in overrides.items() if value is not None}
    if not changes.get("no_log_file"):
        changes.pop("no_log_file", None)
    if "models_dir" in changes:
        changes["models_dir"] = Path(changes["models_dir"])
    config = replace(config, **changes)

    if not is_port_available(config.host, config.port):
        raise click.ClickException(f"Port {config.port} on {config.host} is already in use")

    asyncio.run(start(config))


@cli.command(help="List catalog models and whether they are downloaded")
@click.option("--config", "config_path", default=None, help="Path to a YAML config file.")
@click.option("--models-dir", default=None, type=click.Path(file_okay=False), help="Directory holding downloaded models.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
def models(config_path: str | None, models_dir: str | None, as_json: bool) -> None:
    config = _load_config_or_fail(config_path)
    catalog = ModelCatalog(config.catalog, Path(models_dir) if models_dir else config.models_dir)
    entries = catalog.list_models()
    if as_json:
        click.echo(json.dumps(entries, indent=2))
        return
    if not entries:
        _flash("Catalog is empty", "warning")
        return
    width = max(len(entry["id"]) for entry in entries)
    for entry in entries:
        downloaded = entry["status"]["is_downloaded"]
        mark = click.style("downloaded", fg="green") if downloaded else click.style("missing", fg="yellow")
        click.echo(f"{entry['id']:<{width}}  {entry.get('size') or '-':>8}  {mark}  {entry['name']}")


@cli.command(help="Show the state of a running server")
@_server_option
@click.option("--json", "as_json", is_flag=True, help="Print the raw snapshot.")
def status(config_path: str | None, url: str | None, as_json: bool) -> None:
    state = _call_api(_resolve_url(config_path, url), "GET", "/v1/state")
    if as_json:
        click.echo(json.dumps(state, indent=2))
        return
    _print_state(state)


@cli.command(help="Send a message to the chat session of a running server")
@_server_option
@click.option("--load", "model", default=None, help="Catalog id or model path to load before asking.")
@click.argument("message")
def ask(config_path: str | None, url: str | None, model: str | None, message: str) -> None:
    server = _resolve_url(config_path, url)
    if model:
        body = {"model_path": model} if Path(model).expanduser().exists() else {"model_id": model}
        state = _call_api(server, "POST", "/v1/models/load", json_body=body, timeout=None)
        if not state.get("chat_session", {}).get("loaded"):
            _print_state(state)
            raise click.ClickException(f"Model '{model}' did not load")
        _flash(f"Loaded {model}", "success")

    result = _call_api(server, "POST", "/v1/chat/prompt", json_body={"message": message}, timeout=None)
    click.echo(result.get("response", ""))
