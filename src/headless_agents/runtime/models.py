"""Domain models shared by registry, parser, classifier and runner."""

from __future__ import annotations

import base64
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from headless_agents.runtime.events import StreamEvent


class OutputMode(str, Enum):
    """How a backend encodes its stdout."""

    JSON = "json"
    JSONL = "jsonl"
    TEXT = "text"


class InputMode(str, Enum):
    """How the prompt reaches the backend process."""

    ARG = "arg"
    STDIN = "stdin"


class SessionMode(str, Enum):
    """When a session identifier is sent to the backend."""

    EXISTING = "existing"
    ALWAYS = "always"
    NONE = "none"


class SystemPromptMode(str, Enum):
    """Whether the system prompt extends or replaces the backend default."""

    APPEND = "append"
    REPLACE = "replace"


class SystemPromptWhen(str, Enum):
    """Which turns of a session receive the system prompt."""

    FIRST = "first"
    ALWAYS = "always"
    NEVER = "never"


class ImageMode(str, Enum):
    """How image paths are passed on the command line."""

    REPEAT = "repeat"
    LIST = "list"


@dataclass(slots=True, frozen=True)
class UsageStats:
    """Token usage reported by a backend; every counter is optional."""

    input: int | None = None
    output: int | None = None
    cache_read: int | None = None
    cache_write: int | None = None
    total: int | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.input, self.output, self.cache_read, self.cache_write, self.total)
        )

    def to_dict(self) -> dict[str, int]:
        """Serialize reported counters, skipping the missing ones."""

        payload = {
            "input": self.input,
            "output": self.output,
            "cache_read": self.cache_read,
            "cache_write": self.cache_write,
            "total": self.total,
        }
        return {key: value for key, value in payload.items() if value is not None}


_IMAGE_SUFFIXES = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}
_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


@dataclass(slots=True, frozen=True)
class ImageAttachment:
    """Raw image payload attached to a run."""

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_base64(cls, encoded: str, mime_type: str = "image/png") -> ImageAttachment:
        return cls(data=base64.b64decode(encoded), mime_type=mime_type)

    @classmethod
    def from_path(cls, path: Path) -> ImageAttachment:
        mime_type = _MIME_BY_SUFFIX.get(path.suffix.lower(), "image/png")
        return cls(data=path.read_bytes(), mime_type=mime_type)

    @property
    def suffix(self) -> str:
        return _IMAGE_SUFFIXES.get(self.mime_type.lower(), ".bin")


ReplyCallback = Callable[[dict[str, Any]], None]
AgentEventCallback = Callable[["StreamEvent"], None]


@dataclass(slots=True, frozen=True)
class StreamCallbacks:
    """Optional streaming hooks; any one set makes the run a streaming run."""

    on_partial_reply: ReplyCallback | None = None
    on_reasoning_stream: ReplyCallback | None = None
    on_agent_event: AgentEventCallback | None = None

    @property
    def streaming(self) -> bool:
        return any(
            callback is not None
            for callback in (self.on_partial_reply, self.on_reasoning_stream, self.on_agent_event)
        )


@dataclass(slots=True, frozen=True)
class RunRequest:
    """Inputs for one conversational turn against one backend."""

    session_id: str
    provider: str
    prompt: str
    workspace_dir: Path
    timeout_seconds: float
    model: str | None = None
    cli_session_id: str | None = None
    system_prompt: str = ""
    images: tuple[ImageAttachment, ...] = ()
    idle_timeout_seconds: float | None = None
    callbacks: StreamCallbacks = field(default_factory=StreamCallbacks)


@dataclass(slots=True, frozen=True)
class RunResult:
    """Normalized outcome of a successful run."""

    text: str
    session_id: str
    provider: str
    model: str
    duration_ms: int
    usage: UsageStats | None = None
    stream_errors: tuple[str, ...] = ()
