"""Tolerant JSON helpers shared by the stream parser and the output extractor."""

from __future__ import annotations

import json
from collections.abc import Iterator, Sequence
from typing import Any


def try_load_dict(raw: str) -> dict[str, Any] | None:
    """Parse one JSON object; anything else (noise, arrays, scalars) is ``None``."""

    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, RecursionError):
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def iter_json_lines(text: str) -> Iterator[dict[str, Any]]:
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        payload = try_load_dict(stripped)
        if payload is not None:
            yield payload


def collect_text(value: Any) -> str:
    """Flatten string / content-part / nested message shapes into plain text."""

    if not value:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(collect_text(item) for item in value)
    if not isinstance(value, dict):
        return ""
    if isinstance(value.get("text"), str):
        return value["text"]
    content = value.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(collect_text(item) for item in content)
    if isinstance(value.get("message"), dict):
        return collect_text(value["message"])
    return ""


def pick_session_id(payload: dict[str, Any], fields: Sequence[str]) -> str | None:
    for name in fields:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
