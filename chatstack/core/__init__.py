from .aggregator import merge, merge_all, project_history, segment_from_chunk
from .cancellation import CancelToken
from .chat_controller import ChatSessionController
from .errors import (
    ChatSessionBusyError,
    ChatStackError,
    GenerationAborted,
    GenerationError,
    InvalidStateError,
    LoadError,
    ModelNotDownloadedError,
    ModelNotFoundError,
)
from .locks import KeyedLock
from .model_catalog import CatalogModel, ModelCatalog
from .publisher import StateBroadcaster, StatePublisher
from .resource_stack import ResourceStack
from .runtime import LlmRuntime

__all__ = [
    "merge",
    "merge_all",
    "project_history",
    "segment_from_chunk",
    "CancelToken",
    "ChatSessionController",
    "ChatSessionBusyError",
    "ChatStackError",
    "GenerationAborted",
    "GenerationError",
    "InvalidStateError",
    "LoadError",
    "ModelNotDownloadedError",
    "ModelNotFoundError",
    "KeyedLock",
    "CatalogModel",
    "ModelCatalog",
    "StateBroadcaster",
    "StatePublisher",
    "ResourceStack",
    "LlmRuntime",
]
