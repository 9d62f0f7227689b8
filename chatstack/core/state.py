"""Immutable state types for the resource stack and the chat session.

Every value in this module is a frozen dataclass. Components replace their
state wholesale (``dataclasses.replace``) instead of mutating it, so a
snapshot handed to a publisher can never change underneath its consumer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal, TypeAlias


class ResourceLevel(Enum):
    """The four dependent levels of the stack, lowest first."""

    ENGINE = "engine"
    MODEL = "model"
    CONTEXT = "context"
    SEQUENCE = "sequence"

    @property
    def index(self) -> int:
        return _LEVEL_ORDER.index(self)

    def below(self) -> ResourceLevel | None:
        """Return the level this one depends on, or ``None`` for the engine."""
        if self.index == 0:
            return None
        return _LEVEL_ORDER[self.index - 1]

    def above(self) -> tuple[ResourceLevel, ...]:
        """Return every level that depends on this one, lowest first."""
        return _LEVEL_ORDER[self.index + 1 :]


_LEVEL_ORDER: tuple[ResourceLevel, ...] = (
    ResourceLevel.ENGINE,
    ResourceLevel.MODEL,
    ResourceLevel.CONTEXT,
    ResourceLevel.SEQUENCE,
)


@dataclass(frozen=True, slots=True)
class Unloaded:
    status: Literal["unloaded"] = "unloaded"


@dataclass(frozen=True, slots=True)
class Loading:
    progress: float | None = None
    status: Literal["loading"] = "loading"


@dataclass(frozen=True, slots=True)
class Loaded:
    handle: Any = field(repr=False, compare=False)
    name: str | None = None
    status: Literal["loaded"] = "loaded"


@dataclass(frozen=True, slots=True)
class Failed:
    error: BaseException = field(compare=False)
    status: Literal["failed"] = "failed"


ResourceLevelState: TypeAlias = Unloaded | Loading | Loaded | Failed


@dataclass(frozen=True, slots=True)
class LevelSnapshot:
    """Publishable view of a level; never carries the handle."""

    status: str
    progress: float | None = None
    name: str | None = None
    error: str | None = None

    @property
    def loaded(self) -> bool:
        return self.status == "loaded"

    @classmethod
    def from_state(cls, state: ResourceLevelState) -> LevelSnapshot:
        if isinstance(state, Loading):
            return cls(status=state.status, progress=state.progress)
        if isinstance(state, Loaded):
            return cls(status=state.status, progress=1.0, name=state.name)
        if isinstance(state, Failed):
            return cls(status=state.status, error=str(state.error))
        return cls(status=state.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "loaded": self.loaded,
            "progress": self.progress,
            "name": self.name,
            "error": self.error,
        }


# Segments -------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TextSegment:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True, slots=True)
class TypedSegment:
    """A typed span of generated text, e.g. a ``thought`` block.

    ``end_time`` being ``None`` means the segment is still open and further
    chunks of the same kind are appended to it.
    """

    kind: str
    text: str
    start_time: datetime | None = None
    end_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "segment",
            "segment_type": self.kind,
            "text": self.text,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }


Segment: TypeAlias = TextSegment | TypedSegment


# Chat items -----------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class UserItem:
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "user", "message": self.text}


@dataclass(frozen=True, slots=True)
class ModelItem:
    segments: tuple[Segment, ...] = ()

    @property
    def text(self) -> str:
        """Concatenated text of all segments."""
        return "".join(segment.text for segment in self.segments)

    def to_dict(self) -> dict[str, Any]:
        return {"type": "model", "message": [segment.to_dict() for segment in self.segments]}


ChatItem: TypeAlias = UserItem | ModelItem


@dataclass(frozen=True, slots=True)
class DraftPrompt:
    prompt: str = ""
    completion: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"prompt": self.prompt, "completion": self.completion}


@dataclass(frozen=True, slots=True)
class ChatSessionState:
    loaded: bool = False
    generating: bool = False
    history: tuple[ChatItem, ...] = ()
    draft: DraftPrompt = field(default_factory=DraftPrompt)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "loaded": self.loaded,
            "generating": self.generating,
            "history": [item.to_dict() for item in self.history],
            "draft": self.draft.to_dict(),
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class RuntimeSnapshot:
    """Complete replacement state pushed to publishers after every mutation."""

    levels: dict[ResourceLevel, LevelSnapshot]
    chat_session: ChatSessionState
    selected_model_path: str | None = None
    app_version: str | None = None

    def level(self, level: ResourceLevel) -> LevelSnapshot:
        return self.levels[level]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "app_version": self.app_version,
            "selected_model_path": self.selected_model_path,
        }
        for level in _LEVEL_ORDER:
            payload[level.value] = self.levels[level].to_dict()
        payload["chat_session"] = self.chat_session.to_dict()
        return payload
