"""Single owner of the resource stack, the chat session and state publication."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from ..const import DEFAULT_SYSTEM_PROMPT
from ..version import __version__
from .backend_protocol import InferenceBackend
from .chat_controller import ChatSessionController
from .locks import KeyedLock
from .model_catalog import ModelCatalog
from .publisher import StateBroadcaster, StatePublisher
from .resource_stack import ResourceStack
from .state import ResourceLevel, RuntimeSnapshot


class LlmRuntime:
    """Owns every stateful piece of the core and publishes its snapshots.

    The stack and the controller report each mutation through ``on_change``;
    the runtime turns that into a complete :class:`RuntimeSnapshot` and hands
    it to the publisher.
    """

    def __init__(
        self,
        backend: InferenceBackend,
        *,
        catalog: ModelCatalog | None = None,
        publisher: StatePublisher | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.publisher: StatePublisher = publisher or StateBroadcaster()
        self.catalog = catalog or ModelCatalog([], Path("models"))
        self.locks = KeyedLock()
        self.stack = ResourceStack(backend, self.locks, on_change=self._publish)
        self.chat = ChatSessionController(
            backend,
            self.stack,
            system_prompt=system_prompt,
            on_change=self._publish,
        )

    def snapshot(self) -> RuntimeSnapshot:
        return RuntimeSnapshot(
            levels=self.stack.level_snapshots(),
            chat_session=self.chat.state,
            selected_model_path=self.stack.selected_model_path,
            app_version=__version__,
        )

    def _publish(self) -> None:
        self.publisher.publish(self.snapshot())

    async def load_model_file(self, path: str) -> RuntimeSnapshot:
        """
        Bring the whole stack up for the model at ``path``.

        Loads the engine if needed, then model, context, sequence and the
        chat session in order, stopping at the first level that fails. The
        draft text typed so far is carried over to the new session.

        Returns:
            RuntimeSnapshot: The state after the last attempted step.
        """
        logger.info(f"Loading model file {path}")
        self.stack.selected_model_path = path
        self._publish()

        if not self.stack.is_loaded(ResourceLevel.ENGINE):
            await self.stack.load_engine()
            if not self._check_loaded(ResourceLevel.ENGINE):
                return self.snapshot()

        steps = (
            (ResourceLevel.MODEL, lambda: self.stack.load_model(path)),
            (ResourceLevel.CONTEXT, self.stack.create_context),
            (ResourceLevel.SEQUENCE, self.stack.create_context_sequence),
        )
        for level, step in steps:
            await step()
            if not self._check_loaded(level):
                return self.snapshot()

        await self.chat.create_session()
        return self.snapshot()

    async def load_model_by_id(self, model_id: str) -> RuntimeSnapshot:
        """
        Resolve a catalog id to its local path and bring the stack up.

        Raises:
            ModelNotFoundError: If the id is not in the catalog.
            ModelNotDownloadedError: If the model has no local files.
        """
        path = self.catalog.resolve_path(model_id)
        return await self.load_model_file(path)

    def _check_loaded(self, level: ResourceLevel) -> bool:
        if self.stack.is_loaded(level):
            return True
        logger.warning(f"Stopping bring-up: {level.value} is {self.stack.state(level).status}")
        return False

    async def shutdown(self) -> None:
        """Cancel any generation and dispose everything, top-down."""
        self.chat.stop_active_prompt()
        await self.stack.dispose()
        logger.info("Runtime shut down")
