"""Exception taxonomy for the resource stack and the chat session."""

from __future__ import annotations


class ChatStackError(Exception):
    """Base class for every error raised by the core."""


class InvalidStateError(ChatStackError):
    """An operation was invoked while one of its dependencies is not loaded.

    Raised before any state is touched, so the caller may simply retry once
    the dependency is ready.
    """


class ChatSessionBusyError(InvalidStateError):
    """A prompt was submitted while another one is still generating."""


class LoadError(ChatStackError):
    """A resource level failed to load.

    Parameters
    ----------
    level : str
        Name of the resource level (``engine``, ``model``, ``context`` or
        ``sequence``).
    cause : BaseException
        The backend error that caused the failure.
    """

    def __init__(self, level: str, cause: BaseException) -> None:
        self.level = level
        self.cause = cause
        super().__init__(f"Failed to load {level}: {cause}")


class GenerationAborted(ChatStackError):
    """Generation stopped because its cancel token fired."""


class GenerationError(ChatStackError):
    """The backend failed while streaming a response."""


class ModelNotFoundError(ChatStackError, KeyError):
    """A catalog id does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "model not found"


class ModelNotDownloadedError(ChatStackError):
    """A catalog model exists but has no local files yet."""
