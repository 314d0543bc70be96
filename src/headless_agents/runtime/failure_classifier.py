"""Deterministic failover classification for non-zero backend exits.

Two tiers: a numeric exit-code table keyed per backend id, then text
patterns over stderr/stdout for every code the table does not know.  Generic
codes such as ``1`` and ``2`` are reused by unrelated CLIs for unrelated
conditions, so the textual tier stays the safety net.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from headless_agents.runtime.backends import GEMINI_BACKEND_ID

FAILURE_CLASSIFIER_VERSION = 1
TIMEOUT_EXIT_CODE = 124


class FailoverReason(str, Enum):
    """Portable failure reasons handed to the caller's failover policy."""

    AUTH = "auth"
    BILLING = "billing"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    FORMAT = "format"
    MODEL_NOT_AVAILABLE = "model_not_available"
    UNKNOWN = "unknown"


class FailoverStatus(str, Enum):
    """Retry disposition derived from the reason."""

    RETRYABLE = "retryable"
    FATAL = "fatal"


BACKEND_EXIT_CODE_REASONS: Mapping[str, Mapping[int, FailoverReason]] = {
    GEMINI_BACKEND_ID: {
        41: FailoverReason.AUTH,
        42: FailoverReason.UNKNOWN,
        44: FailoverReason.UNKNOWN,
        52: FailoverReason.UNKNOWN,
        53: FailoverReason.RATE_LIMIT,
    },
}

_RETRYABLE_REASONS = frozenset({FailoverReason.RATE_LIMIT, FailoverReason.TIMEOUT})

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "resource_exhausted",
    "quota exceeded",
    "overloaded",
    "try again later",
)
_BILLING_PATTERNS: tuple[str, ...] = (
    "billing",
    "payment required",
    "insufficient credits",
    "insufficient balance",
    "credit balance",
    "402",
)
_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "oauth",
    "not logged in",
    "login required",
    "restricted token",
    "401",
    "403",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "deadline exceeded",
)
_FORMAT_PATTERNS: tuple[str, ...] = (
    "invalid request format",
    "invalid_request_error",
    "malformed request",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "econnreset",
)

_TEXT_RULES: tuple[tuple[str, FailoverReason, tuple[str, ...]], ...] = (
    ("rate_limit", FailoverReason.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
    ("billing", FailoverReason.BILLING, _BILLING_PATTERNS),
    ("auth", FailoverReason.AUTH, _AUTH_PATTERNS),
    ("model_not_available", FailoverReason.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    ("timeout", FailoverReason.TIMEOUT, _TIMEOUT_PATTERNS),
    ("format", FailoverReason.FORMAT, _FORMAT_PATTERNS),
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    reason: FailoverReason
    status: FailoverStatus
    matched_rule: str
    matched_pattern: str | None = None

    @property
    def retryable(self) -> bool:
        return self.status is FailoverStatus.RETRYABLE

    def to_event_details(self, *, provider: str, model: str) -> dict[str, object]:
        """Serialize classifier diagnostics for logs and agent events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "provider": provider,
            "model": model,
            "reason": self.reason.value,
            "status": self.status.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


class FailoverError(RuntimeError):
    """Classified backend failure; the caller owns retry and failover policy."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        reason: FailoverReason,
        status: FailoverStatus,
        provider: str,
        model: str,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.status = status
        self.provider = provider
        self.model = model
        self.exit_code = exit_code

    @property
    def retryable(self) -> bool:
        return self.status is FailoverStatus.RETRYABLE

    @classmethod
    def from_classification(
        cls,
        message: str,
        classification: FailureClassification,
        *,
        provider: str,
        model: str,
        exit_code: int | None = None,
    ) -> FailoverError:
        return cls(
            message,
            reason=classification.reason,
            status=classification.status,
            provider=provider,
            model=model,
            exit_code=exit_code,
        )


def resolve_failover_status(reason: FailoverReason) -> FailoverStatus:
    if reason in _RETRYABLE_REASONS:
        return FailoverStatus.RETRYABLE
    return FailoverStatus.FATAL


def classify_backend_failure(
    *,
    backend_id: str,
    exit_code: int,
    stderr: str,
    stdout: str,
    timed_out: bool = False,
) -> FailureClassification:
    """Classify a non-zero exit into a failover reason and disposition."""

    if timed_out or exit_code == TIMEOUT_EXIT_CODE:
        return FailureClassification(
            reason=FailoverReason.TIMEOUT,
            status=FailoverStatus.RETRYABLE,
            matched_rule="process_timeout",
        )

    table = BACKEND_EXIT_CODE_REASONS.get(backend_id, {})
    reason = table.get(exit_code)
    if reason is not None:
        return FailureClassification(
            reason=reason,
            status=resolve_failover_status(reason),
            matched_rule=f"exit_code_{exit_code}",
        )

    return classify_failure_text(_normalize_text(stdout=stdout, stderr=stderr))


def classify_failure_text(text: str) -> FailureClassification:
    """Classify free-form error text; falls back to ``unknown``/fatal."""

    haystack = text.lower()
    for rule, reason, patterns in _TEXT_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                reason=reason,
                status=resolve_failover_status(reason),
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            reason=FailoverReason.UNKNOWN,
            status=FailoverStatus.RETRYABLE,
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        reason=FailoverReason.UNKNOWN,
        status=FailoverStatus.FATAL,
        matched_rule="fallback_unknown",
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern.isdigit():
            # Status codes only count as whole tokens, not inside ids or hashes.
            if re.search(rf"\b{pattern}\b", haystack):
                return pattern
        elif pattern in haystack:
            return pattern
    return None
