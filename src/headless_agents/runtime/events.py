"""Typed stream events emitted while a backend process runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from headless_agents.runtime.models import UsageStats


@dataclass(slots=True, frozen=True)
class InitEvent:
    """Backend announced its session; authoritative source of the session id."""

    stream: ClassVar[str] = "init"

    session_id: str | None
    model: str | None
    resumed: bool

    def to_payload(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "model": self.model, "resumed": self.resumed}


@dataclass(slots=True, frozen=True)
class AssistantEvent:
    stream: ClassVar[str] = "assistant"

    text: str
    delta: str

    def to_payload(self) -> dict[str, Any]:
        return {"text": self.text, "delta": self.delta}


@dataclass(slots=True, frozen=True)
class ReasoningEvent:
    stream: ClassVar[str] = "reasoning"

    text: str
    delta: str

    def to_payload(self) -> dict[str, Any]:
        return {"text": self.text, "delta": self.delta}


@dataclass(slots=True, frozen=True)
class ToolEvent:
    """Tool invocation boundary; the runtime forwards it without interpreting it."""

    stream: ClassVar[str] = "tool"

    phase: Literal["start", "end"]
    tool: str | None
    status: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"phase": self.phase, "tool": self.tool}
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass(slots=True, frozen=True)
class ResultEvent:
    stream: ClassVar[str] = "result"

    status: str | None
    usage: UsageStats | None
    session_id: str | None
    duration_ms: int | None
    tool_calls: int | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "usage": self.usage.to_dict() if self.usage is not None else None,
            "session_id": self.session_id,
            "duration_ms": self.duration_ms,
            "tool_calls": self.tool_calls,
        }


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    stream: ClassVar[str] = "error"

    message: str
    raw: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return dict(self.raw) if self.raw else {"message": self.message}


@dataclass(slots=True, frozen=True)
class GenericEvent:
    """Pass-through for event kinds the parser does not model."""

    name: str
    payload: dict[str, Any]

    @property
    def stream(self) -> str:
        return self.name

    def to_payload(self) -> dict[str, Any]:
        return self.payload


StreamEvent = (
    InitEvent
    | AssistantEvent
    | ReasoningEvent
    | ToolEvent
    | ResultEvent
    | ErrorEvent
    | GenericEvent
)
