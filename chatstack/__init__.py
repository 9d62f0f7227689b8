"""Local language-model stack with a streaming chat session on top."""

from .version import __version__

__all__ = ["__version__"]
