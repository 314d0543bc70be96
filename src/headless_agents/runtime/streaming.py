"""Incremental JSON-lines parser turning backend stdout into typed events.

Chunks may split or merge lines arbitrarily; complete lines are classified
independently.  Lines that are not a JSON object are protocol noise and are
dropped without an event.  Classification probes the ``type``/``role``
discriminators in a fixed order:

1. ``init`` (or ``system``/``init``)   -> :class:`InitEvent`
2. ``message`` with a model/assistant role, ``text`` or ``assistant``
                                        -> :class:`AssistantEvent`
3. ``thinking``                         -> :class:`ReasoningEvent`
4. ``tool_use`` / ``tool_result``       -> :class:`ToolEvent` start / end
5. ``result``                           -> :class:`ResultEvent`
6. ``error``                            -> :class:`ErrorEvent`
7. ``event`` carrying a ``stream`` name and everything else
                                        -> :class:`GenericEvent`
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from headless_agents.runtime.backends import DEFAULT_SESSION_ID_FIELDS
from headless_agents.runtime.events import (
    AssistantEvent,
    ErrorEvent,
    GenericEvent,
    InitEvent,
    ReasoningEvent,
    ResultEvent,
    StreamEvent,
    ToolEvent,
)
from headless_agents.runtime.json_lines import collect_text, pick_session_id, try_load_dict
from headless_agents.runtime.models import UsageStats
from headless_agents.runtime.usage import coerce_count, usage_from_mapping

logger = logging.getLogger(__name__)

_ASSISTANT_ROLES = frozenset({"model", "assistant"})


@dataclass(slots=True)
class StreamState:
    """Per-run accumulation finalized into the run result at exit."""

    assistant_text: str = ""
    reasoning_text: str = ""
    session_id: str | None = None
    usage: UsageStats | None = None
    errors: list[str] = field(default_factory=list)


class StreamEventParser:
    """Line reassembly plus classification for one run."""

    def __init__(
        self,
        *,
        resumed: bool = False,
        session_id_fields: Sequence[str] = DEFAULT_SESSION_ID_FIELDS,
    ) -> None:
        self.state = StreamState()
        self._resumed = resumed
        self._session_id_fields = tuple(dict.fromkeys((*session_id_fields, "session_id")))
        self._pending = ""

    def feed(self, chunk: str) -> list[StreamEvent]:
        """Consume one stdout fragment and return events for its complete lines."""

        self._pending += chunk
        if "\n" not in self._pending:
            return []
        *lines, self._pending = self._pending.split("\n")
        return self._parse_lines(lines)

    def finish(self) -> list[StreamEvent]:
        """Flush a trailing line that never received its newline."""

        remainder, self._pending = self._pending, ""
        return self._parse_lines([remainder])

    def parse_line(self, line: str) -> StreamEvent | None:
        stripped = line.strip()
        if not stripped:
            return None
        payload = try_load_dict(stripped)
        if payload is None:
            return None
        return self._classify(payload)

    def _parse_lines(self, lines: list[str]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for line in lines:
            event = self.parse_line(line)
            if event is not None:
                events.append(event)
        return events

    def _classify(self, payload: dict[str, Any]) -> StreamEvent:  # noqa: PLR0911
        kind = payload.get("type")
        role = payload.get("role")

        if kind == "init" or (kind == "system" and payload.get("subtype") == "init"):
            return self._on_init(payload)
        if (kind == "message" and role in _ASSISTANT_ROLES) or kind in {"text", "assistant"}:
            return self._on_assistant(payload)
        if kind == "thinking":
            return self._on_reasoning(payload)
        if kind == "tool_use":
            return ToolEvent(
                phase="start",
                tool=_optional_str(payload.get("tool_name") or payload.get("name")),
                raw=payload,
            )
        if kind == "tool_result":
            return ToolEvent(
                phase="end",
                tool=_optional_str(payload.get("tool_id") or payload.get("tool_use_id")),
                status=_optional_str(payload.get("status")),
                raw=payload,
            )
        if kind == "result":
            return self._on_result(payload)
        if kind == "error":
            return self._on_error(payload)
        if kind == "event" and isinstance(payload.get("stream"), str):
            data = payload.get("data")
            return GenericEvent(
                name=payload["stream"],
                payload=data if isinstance(data, dict) else payload,
            )
        name = kind if isinstance(kind, str) and kind else "unknown"
        return GenericEvent(name=name, payload=payload)

    def _on_init(self, payload: dict[str, Any]) -> InitEvent:
        session_id = pick_session_id(payload, self._session_id_fields)
        if session_id is not None:
            self.state.session_id = session_id
        return InitEvent(
            session_id=self.state.session_id,
            model=_optional_str(payload.get("model")),
            resumed=self._resumed,
        )

    def _on_assistant(self, payload: dict[str, Any]) -> AssistantEvent:
        delta = _content_of(payload)
        self.state.assistant_text += delta
        return AssistantEvent(text=self.state.assistant_text, delta=delta)

    def _on_reasoning(self, payload: dict[str, Any]) -> ReasoningEvent:
        delta = _content_of(payload)
        self.state.reasoning_text += delta
        return ReasoningEvent(text=self.state.reasoning_text, delta=delta)

    def _on_result(self, payload: dict[str, Any]) -> ResultEvent:
        stats = payload.get("stats")
        if not isinstance(stats, dict):
            stats = payload.get("usage")
        if isinstance(stats, dict):
            usage = usage_from_mapping(stats)
            if usage is not None:
                self.state.usage = usage
        else:
            stats = {}
        return ResultEvent(
            status=_optional_str(payload.get("status") or payload.get("subtype")),
            usage=self.state.usage,
            session_id=self.state.session_id,
            duration_ms=coerce_count(stats.get("duration_ms", payload.get("duration_ms"))),
            tool_calls=coerce_count(stats.get("tool_calls")),
        )

    def _on_error(self, payload: dict[str, Any]) -> ErrorEvent:
        message = _error_message(payload)
        if message:
            self.state.errors.append(message)
            logger.warning("cli stream error: %s", message)
        return ErrorEvent(message=message, raw=payload)


def _content_of(payload: dict[str, Any]) -> str:
    for key in ("content", "text"):
        value = payload.get(key)
        if isinstance(value, str):
            return value
    if isinstance(payload.get("message"), dict):
        return collect_text(payload["message"])
    return collect_text(payload.get("content"))


def _error_message(payload: dict[str, Any]) -> str:
    message = payload.get("message")
    if isinstance(message, str):
        return message.strip()
    error = payload.get("error")
    if isinstance(error, str):
        return error.strip()
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"].strip()
    return ""


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
