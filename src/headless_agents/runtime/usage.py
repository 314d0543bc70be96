"""Token usage helpers for structured events and plain-text CLI output."""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from headless_agents.runtime.models import UsageStats

_INPUT_KEYS = ("input_tokens", "input", "inputTokens", "prompt_tokens")
_OUTPUT_KEYS = ("output_tokens", "output", "outputTokens", "completion_tokens")
_TOTAL_KEYS = ("total_tokens", "total", "totalTokens")
_CACHE_READ_KEYS = (
    "cache_read_input_tokens",
    "cached_input_tokens",
    "cached_tokens",
    "cached",
    "cache_read",
    "cacheRead",
)
_CACHE_WRITE_KEYS = (
    "cache_creation_input_tokens",
    "cache_write_input_tokens",
    "cache_write_tokens",
    "cache_write",
    "cacheWrite",
)

_CODEX_TOKENS_USED = re.compile(r"tokens used\s*[\r\n ]+\s*([\d,]+)", re.IGNORECASE)
_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOTAL_TOKENS = re.compile(r"total[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)


def coerce_count(value: Any) -> int | None:
    """Accept ints, integral floats and numeric strings; reject everything else."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        if value < 0 or not value.is_integer():
            return None
        return int(value)
    if isinstance(value, str):
        raw = value.replace(",", "").strip()
        if raw.isdigit():
            return int(raw)
    return None


def usage_from_mapping(raw: Mapping[str, Any]) -> UsageStats | None:
    """Read a usage/stats object, trying the ``_tokens`` spelling first per counter."""

    cache_read = _pick(raw, _CACHE_READ_KEYS)
    cache_write = _pick(raw, _CACHE_WRITE_KEYS)
    usage = UsageStats(
        input=_pick(raw, _INPUT_KEYS),
        output=_pick(raw, _OUTPUT_KEYS),
        cache_read=cache_read if cache_read else None,
        cache_write=cache_write if cache_write else None,
        total=_pick(raw, _TOTAL_KEYS),
    )
    if usage.is_empty():
        return None
    return usage


def extract_textual_usage(*, stdout: str, stderr: str = "") -> UsageStats | None:
    """Scrape ``input tokens: N`` style markers from plain-text output."""

    prompt: int | None = None
    completion: int | None = None
    total: int | None = None

    for text in (stderr, stdout):
        if total is None:
            total = _extract_int(_TOTAL_TOKENS, text)
        if prompt is None:
            prompt = _extract_int(_INPUT_TOKENS, text)
        if completion is None:
            completion = _extract_int(_OUTPUT_TOKENS, text)
        if total is None:
            total = _extract_int(_CODEX_TOKENS_USED, text)

    if prompt is None and completion is None and total is None:
        return None
    if total is None:
        known = [value for value in (prompt, completion) if value is not None]
        total = sum(known) if known else None
    return UsageStats(input=prompt, output=completion, total=total)


def _pick(raw: Mapping[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        if key in raw:
            value = coerce_count(raw[key])
            if value is not None:
                return value
    return None


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
