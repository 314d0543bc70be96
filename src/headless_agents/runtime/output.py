"""Best-effort text, usage and session recovery from buffered backend stdout.

Applied after the process exits, only to fill what the streaming parser left
empty.  Malformed or empty output yields ``None`` rather than an error.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from headless_agents.runtime.json_lines import (
    collect_text,
    iter_json_lines,
    pick_session_id,
    try_load_dict,
)
from headless_agents.runtime.models import OutputMode, UsageStats
from headless_agents.runtime.usage import extract_textual_usage, usage_from_mapping

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_ASSISTANT_ROLES = frozenset({"model", "assistant"})


@dataclass(slots=True, frozen=True)
class ExtractedOutput:
    """What could be recovered from the full stdout buffer."""

    text: str
    session_id: str | None
    usage: UsageStats | None


def extract_cli_output(
    stdout: str,
    *,
    output_mode: OutputMode,
    session_id_fields: Sequence[str],
    stderr: str = "",
) -> ExtractedOutput | None:
    if output_mode is OutputMode.JSON:
        return parse_cli_json(stdout, session_id_fields=session_id_fields)
    if output_mode is OutputMode.JSONL:
        return parse_cli_jsonl(stdout, session_id_fields=session_id_fields)
    return parse_cli_text(stdout, stderr=stderr)


def parse_cli_json(stdout: str, *, session_id_fields: Sequence[str]) -> ExtractedOutput | None:
    """Parse the whole stdout as one JSON document."""

    text = stdout.strip()
    if not text:
        return None
    payload = _parse_json_payload(text)
    if payload is None:
        return None

    reply = (
        collect_text(payload.get("message"))
        or collect_text(payload.get("content"))
        or collect_text(payload.get("result"))
        or collect_text(payload.get("response"))
        or collect_text(payload)
    )
    return ExtractedOutput(
        text=reply.strip(),
        session_id=pick_session_id(payload, session_id_fields),
        usage=_usage_of(payload),
    )


def parse_cli_jsonl(stdout: str, *, session_id_fields: Sequence[str]) -> ExtractedOutput | None:
    """Parse every line independently; the last line carrying a session id wins."""

    session_id: str | None = None
    usage: UsageStats | None = None
    blocks: list[str] = []
    streamed: list[str] = []
    result_text = ""

    for payload in iter_json_lines(stdout):
        candidate = pick_session_id(payload, session_id_fields)
        if candidate is not None:
            session_id = candidate
        usage = _usage_of(payload) or usage

        kind = payload.get("type")
        if (kind == "message" and payload.get("role") in _ASSISTANT_ROLES) or kind == "text":
            streamed.append(collect_text(payload))
            continue
        if kind == "result" and isinstance(payload.get("result"), str):
            result_text = payload["result"]
            continue
        item = payload.get("item")
        if isinstance(item, dict) and isinstance(item.get("text"), str):
            item_type = item.get("type")
            item_type = item_type.lower() if isinstance(item_type, str) else ""
            if not item_type or "message" in item_type:
                if streamed:
                    blocks.append("".join(streamed))
                    streamed = []
                blocks.append(item["text"])

    if streamed:
        blocks.append("".join(streamed))
    text = "\n".join(block for block in blocks if block.strip()).strip() or result_text.strip()
    if not text and session_id is None and usage is None:
        return None
    return ExtractedOutput(text=text, session_id=session_id, usage=usage)


def parse_cli_text(stdout: str, *, stderr: str = "") -> ExtractedOutput | None:
    text = stdout.strip()
    usage = extract_textual_usage(stdout=stdout, stderr=stderr)
    if not text and usage is None:
        return None
    return ExtractedOutput(text=text, session_id=None, usage=usage)


def _parse_json_payload(text: str) -> dict[str, Any] | None:
    direct = try_load_dict(text)
    if direct is not None:
        return direct

    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        payload = try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return try_load_dict(text[start : end + 1])


def _usage_of(payload: dict[str, Any]) -> UsageStats | None:
    for key in ("usage", "stats"):
        raw = payload.get(key)
        if isinstance(raw, dict):
            usage = usage_from_mapping(raw)
            if usage is not None:
                return usage
    return None
