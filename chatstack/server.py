"""Server setup helpers for the chatstack FastAPI application.

This module wires the runtime into a FastAPI app:

- ``configure_logging``: configure loguru output to console and file
- ``create_lifespan``: build the :class:`LlmRuntime` on startup, optionally
  autoload a model in the background, and shut everything down on exit
- ``create_app``: attach routes, middleware and exception handlers
- ``setup_server``: return a :class:`uvicorn.Config` ready to run

The backend is created through a factory so tests and embedders can run
the same application against a different inference backend.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from http import HTTPStatus
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
import uvicorn

from .api.endpoints import router
from .config import ChatStackConfig
from .core.backend_protocol import InferenceBackend
from .core.errors import (
    ChatStackError,
    GenerationError,
    InvalidStateError,
    ModelNotDownloadedError,
    ModelNotFoundError,
)
from .core.model_catalog import ModelCatalog
from .core.runtime import LlmRuntime
from .utils.errors import create_error_response
from .version import __version__

BackendFactory = Callable[[ChatStackConfig], InferenceBackend]

# Checked in order; the first matching class wins.
ERROR_STATUS: tuple[tuple[type[ChatStackError], HTTPStatus, str], ...] = (
    (ModelNotFoundError, HTTPStatus.NOT_FOUND, "model_not_found"),
    (ModelNotDownloadedError, HTTPStatus.CONFLICT, "model_not_downloaded"),
    (InvalidStateError, HTTPStatus.CONFLICT, "invalid_state"),
    (GenerationError, HTTPStatus.BAD_GATEWAY, "generation_error"),
)


def configure_logging(log_file: str | None = None, no_log_file: bool = False, log_level: str = "INFO") -> None:
    """Configure loguru logging.

    Removes the default handler, adds a colored console handler and, unless
    ``no_log_file`` is set, a rotating file handler at ``log_file`` (or
    ``logs/chatstack.log``).
    """
    logger.remove()

    logger.add(
        lambda msg: print(msg, end=""),
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>",
        colorize=True,
    )
    if not no_log_file:
        logger.add(
            log_file or "logs/chatstack.log",
            rotation="500 MB",
            retention="10 days",
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
        )


def create_backend(config: ChatStackConfig) -> InferenceBackend:
    """Create the MLX backend. Requires the ``mlx`` extra (Apple silicon)."""
    from .models.mlx_lm import MlxBackend

    return MlxBackend(
        context_length=config.context_length,
        max_tokens=config.max_tokens,
        completion_max_tokens=config.completion_max_tokens,
        reasoning_parser=config.reasoning_parser,
    )


def create_runtime(config: ChatStackConfig, backend: InferenceBackend) -> LlmRuntime:
    return LlmRuntime(
        backend,
        catalog=ModelCatalog(config.catalog, config.models_dir),
        system_prompt=config.system_prompt,
    )


async def autoload_model(runtime: LlmRuntime, target: str) -> None:
    """Load ``target`` as a catalog id when it is one, else as a model path."""
    try:
        if target in runtime.catalog:
            await runtime.load_model_by_id(target)
        else:
            await runtime.load_model_file(target)
    except ChatStackError as e:
        logger.error(f"Autoload of '{target}' failed. {type(e).__name__}: {e}")


def create_lifespan(
    config: ChatStackConfig,
    backend_factory: BackendFactory = create_backend,
) -> Callable[[FastAPI], AsyncIterator[None]]:
    """Create the FastAPI lifespan bound to ``config``.

    On startup the runtime is stored on ``app.state.runtime`` and, when
    ``config.autoload_model`` is set, a background task starts bringing the
    stack up so the server answers requests immediately. On shutdown the
    autoload task is cancelled and the runtime disposes everything.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            runtime = create_runtime(config, backend_factory(config))
        except Exception as e:
            logger.error(f"Failed to initialize runtime. {type(e).__name__}: {e}")
            raise
        app.state.runtime = runtime
        app.state.background_tasks = set()
        runtime.publisher.publish(runtime.snapshot())

        if config.autoload_model:
            logger.info(f"Autoloading model {config.autoload_model}")
            task = asyncio.create_task(autoload_model(runtime, config.autoload_model))
            app.state.background_tasks.add(task)
            task.add_done_callback(app.state.background_tasks.discard)

        yield

        logger.info("Shutting down application")
        for task in list(app.state.background_tasks):
            task.cancel()
        if app.state.background_tasks:
            await asyncio.gather(*app.state.background_tasks, return_exceptions=True)
        try:
            await runtime.shutdown()
        except Exception as e:
            logger.error(f"Error during shutdown. {type(e).__name__}: {e}")

    return lifespan


def _error_status(exc: ChatStackError) -> tuple[HTTPStatus, str]:
    for error_type, status, err_type in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status, err_type
    return HTTPStatus.INTERNAL_SERVER_ERROR, "internal_error"


def create_app(config: ChatStackConfig, backend_factory: BackendFactory = create_backend) -> FastAPI:
    """Build the FastAPI application with routes, middleware and error handlers."""
    app = FastAPI(
        title="chatstack",
        description="Local LLM chat runtime with a layered resource stack",
        version=__version__,
        lifespan=create_lifespan(config, backend_factory),
    )
    app.include_router(router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    @app.exception_handler(ChatStackError)
    async def chatstack_exception_handler(request: Request, exc: ChatStackError) -> JSONResponse:
        status, err_type = _error_status(exc)
        if status == HTTPStatus.INTERNAL_SERVER_ERROR:
            logger.error(f"Unhandled {type(exc).__name__} on {request.url.path}: {exc}")
            message = "Internal server error"
        else:
            logger.warning(f"{request.method} {request.url.path} -> {int(status)}: {exc}")
            message = str(exc)
        return JSONResponse(status_code=status, content=create_error_response(message, err_type, status))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.opt(exception=exc).error(f"Global exception handler caught: {exc}")
        return JSONResponse(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            content=create_error_response("Internal server error", "internal_error"),
        )

    return app


def setup_server(config: ChatStackConfig, backend_factory: BackendFactory = create_backend) -> uvicorn.Config:
    """Configure logging, build the app and return a :class:`uvicorn.Config` for it."""
    configure_logging(
        log_file=config.log_file,
        no_log_file=config.no_log_file,
        log_level=config.log_level,
    )
    app = create_app(config, backend_factory)
    logger.info(f"Starting server on {config.host}:{config.port}")
    return uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True,
    )


async def start(config: ChatStackConfig, backend_factory: BackendFactory = create_backend) -> None:
    """Run the server until it is stopped."""
    server = uvicorn.Server(setup_server(config, backend_factory))
    await server.serve()
