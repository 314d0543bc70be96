"""Backend descriptors, built-in defaults and deterministic override merging."""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from headless_agents.runtime.models import (
    ImageMode,
    InputMode,
    OutputMode,
    SessionMode,
    SystemPromptMode,
    SystemPromptWhen,
)

SESSION_ID_PLACEHOLDER = "{sessionId}"
DEFAULT_SESSION_ID_FIELDS: tuple[str, ...] = (
    "session_id",
    "sessionId",
    "conversation_id",
    "conversationId",
)


class UnknownBackendError(ValueError):
    """Requested backend is neither built in nor configured with a command."""


@dataclass(slots=True, frozen=True)
class BackendDescriptor:
    """Normalized configuration describing how to invoke and interpret a backend.

    ``serialize`` is a contract for the caller's scheduler: runs against a
    backend that sets it must be queued, the runtime itself never enforces it.
    """

    command: str
    args: tuple[str, ...] = ()
    streaming_args: tuple[str, ...] | None = None
    resume_args: tuple[str, ...] | None = None
    session_args: tuple[str, ...] | None = None
    env: dict[str, str] = field(default_factory=dict)
    clear_env: tuple[str, ...] = ()
    output: OutputMode = OutputMode.TEXT
    resume_output: OutputMode | None = None
    input: InputMode = InputMode.ARG
    max_prompt_arg_chars: int | None = None
    prompt_arg: str | None = None
    model_arg: str | None = None
    model_aliases: dict[str, str] = field(default_factory=dict)
    session_arg: str | None = None
    session_mode: SessionMode = SessionMode.EXISTING
    session_id_fields: tuple[str, ...] = DEFAULT_SESSION_ID_FIELDS
    system_prompt_arg: str | None = None
    system_prompt_env_var: str | None = None
    system_prompt_mode: SystemPromptMode = SystemPromptMode.APPEND
    system_prompt_when: SystemPromptWhen = SystemPromptWhen.FIRST
    image_arg: str | None = None
    image_mode: ImageMode = ImageMode.REPEAT
    serialize: bool = False


@dataclass(slots=True, frozen=True)
class BackendOverride:
    """Partial descriptor supplied by configuration; ``None`` means "not set"."""

    command: str | None = None
    args: tuple[str, ...] | None = None
    streaming_args: tuple[str, ...] | None = None
    resume_args: tuple[str, ...] | None = None
    session_args: tuple[str, ...] | None = None
    env: dict[str, str] | None = None
    clear_env: tuple[str, ...] | None = None
    output: OutputMode | None = None
    resume_output: OutputMode | None = None
    input: InputMode | None = None
    max_prompt_arg_chars: int | None = None
    prompt_arg: str | None = None
    model_arg: str | None = None
    model_aliases: dict[str, str] | None = None
    session_arg: str | None = None
    session_mode: SessionMode | None = None
    session_id_fields: tuple[str, ...] | None = None
    system_prompt_arg: str | None = None
    system_prompt_env_var: str | None = None
    system_prompt_mode: SystemPromptMode | None = None
    system_prompt_when: SystemPromptWhen | None = None
    image_arg: str | None = None
    image_mode: ImageMode | None = None
    serialize: bool | None = None


@dataclass(slots=True, frozen=True)
class ResolvedBackend:
    """Descriptor resolved for one normalized backend id."""

    id: str
    descriptor: BackendDescriptor


_MAPPING_FIELDS = frozenset({"env", "model_aliases"})
_UNION_FIELDS = frozenset({"clear_env"})


def merge_backend_descriptor(
    base: BackendDescriptor,
    override: BackendOverride | None,
) -> BackendDescriptor:
    """Layer ``override`` on ``base`` without mutating either.

    Scalars and sequences are replaced wholesale when the override sets them,
    ``env``/``model_aliases`` merge per key (override wins) and ``clear_env``
    is an order-preserving union.
    """

    if override is None:
        return dataclasses.replace(
            base,
            env=dict(base.env),
            model_aliases=dict(base.model_aliases),
        )

    changes: dict[str, Any] = {}
    for item in dataclasses.fields(BackendOverride):
        value = getattr(override, item.name)
        base_value = getattr(base, item.name)
        if item.name in _MAPPING_FIELDS:
            changes[item.name] = {**base_value, **(value or {})}
        elif item.name in _UNION_FIELDS:
            changes[item.name] = tuple(dict.fromkeys((*base_value, *(value or ()))))
        elif value is not None:
            changes[item.name] = value
    return dataclasses.replace(base, **changes)


_SEPARATORS = re.compile(r"[\s_.\-]+")


def normalize_backend_id(value: str) -> str:
    """Case- and separator-insensitive backend key (``Gemini_CLI`` -> ``gemini-cli``)."""

    return _SEPARATORS.sub("-", value.strip().lower()).strip("-")


CLAUDE_MODEL_ALIASES: dict[str, str] = {
    "opus": "opus",
    "opus-4.6": "opus",
    "opus-4.5": "opus",
    "opus-4": "opus",
    "claude-opus-4-6": "opus",
    "claude-opus-4-5": "opus",
    "claude-opus-4": "opus",
    "sonnet": "sonnet",
    "sonnet-4.5": "sonnet",
    "sonnet-4.1": "sonnet",
    "sonnet-4.0": "sonnet",
    "claude-sonnet-4-5": "sonnet",
    "claude-sonnet-4-1": "sonnet",
    "claude-sonnet-4-0": "sonnet",
    "haiku": "haiku",
    "haiku-3.5": "haiku",
    "claude-haiku-3-5": "haiku",
}

GEMINI_MODEL_ALIASES: dict[str, str] = {
    "pro-3": "gemini-3-pro-preview",
    "flash-3": "gemini-3-flash-preview",
    "gemini-3-pro": "gemini-3-pro-preview",
    "gemini-3-flash": "gemini-3-flash-preview",
    "pro": "gemini-2.5-pro",
    "2.5-pro": "gemini-2.5-pro",
    "gemini-2.5-pro": "gemini-2.5-pro",
    "flash": "gemini-2.5-flash",
    "2.5-flash": "gemini-2.5-flash",
    "gemini-2.5-flash": "gemini-2.5-flash",
    "lite": "gemini-2.5-flash-lite",
    "flash-lite": "gemini-2.5-flash-lite",
    "gemini-2.5-flash-lite": "gemini-2.5-flash-lite",
    "auto-3": "auto-gemini-3",
    "auto-gemini-3": "auto-gemini-3",
    "auto-2.5": "auto-gemini-2.5",
    "auto-gemini-2.5": "auto-gemini-2.5",
}

CLAUDE_BACKEND_ID = "claude-cli"
CODEX_BACKEND_ID = "codex-cli"
GEMINI_BACKEND_ID = "gemini-cli-headless"

_CLAUDE_BASE_ARGS = ("-p", "--output-format", "json", "--dangerously-skip-permissions")
_CODEX_SANDBOX_ARGS = ("--color", "never", "--sandbox", "read-only", "--skip-git-repo-check")
_GEMINI_BASE_ARGS = ("--output-format", "stream-json", "--yolo")

BUILTIN_BACKENDS: Mapping[str, BackendDescriptor] = {
    CLAUDE_BACKEND_ID: BackendDescriptor(
        command="claude",
        args=_CLAUDE_BASE_ARGS,
        resume_args=(*_CLAUDE_BASE_ARGS, "--resume", SESSION_ID_PLACEHOLDER),
        output=OutputMode.JSON,
        input=InputMode.ARG,
        model_arg="--model",
        model_aliases=CLAUDE_MODEL_ALIASES,
        session_arg="--session-id",
        session_mode=SessionMode.ALWAYS,
        system_prompt_arg="--append-system-prompt",
        system_prompt_mode=SystemPromptMode.APPEND,
        system_prompt_when=SystemPromptWhen.FIRST,
        clear_env=("ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY_OLD"),
        serialize=True,
    ),
    CODEX_BACKEND_ID: BackendDescriptor(
        command="codex",
        args=("exec", "--json", *_CODEX_SANDBOX_ARGS),
        resume_args=("exec", "resume", SESSION_ID_PLACEHOLDER, *_CODEX_SANDBOX_ARGS),
        output=OutputMode.JSONL,
        resume_output=OutputMode.TEXT,
        input=InputMode.ARG,
        model_arg="--model",
        session_id_fields=("thread_id",),
        session_mode=SessionMode.EXISTING,
        image_arg="--image",
        image_mode=ImageMode.REPEAT,
        serialize=True,
    ),
    GEMINI_BACKEND_ID: BackendDescriptor(
        command="gemini",
        args=_GEMINI_BASE_ARGS,
        streaming_args=_GEMINI_BASE_ARGS,
        resume_args=(*_GEMINI_BASE_ARGS, "--resume", SESSION_ID_PLACEHOLDER),
        env={
            "GEMINI_TELEMETRY_ENABLED": "false",
            "GEMINI_TELEMETRY_LOG_PROMPTS": "false",
        },
        output=OutputMode.JSONL,
        input=InputMode.ARG,
        prompt_arg="-p",
        model_arg="-m",
        model_aliases=GEMINI_MODEL_ALIASES,
        session_mode=SessionMode.EXISTING,
        session_id_fields=("session_id",),
        system_prompt_env_var="GEMINI_SYSTEM_MD",
        system_prompt_mode=SystemPromptMode.REPLACE,
        system_prompt_when=SystemPromptWhen.ALWAYS,
        serialize=True,
    ),
}

BUILTIN_BACKEND_ALIASES: Mapping[str, str] = {
    "gemini-cli": GEMINI_BACKEND_ID,
    "gemini-headless": GEMINI_BACKEND_ID,
    "google-gemini-cli": GEMINI_BACKEND_ID,
    "headless-gemini-cli": GEMINI_BACKEND_ID,
}

_EMPTY_DESCRIPTOR = BackendDescriptor(command="")


def canonical_backend_id(value: str) -> str:
    """Normalize ``value`` and fold built-in aliases onto their canonical id."""

    normalized = normalize_backend_id(value)
    return BUILTIN_BACKEND_ALIASES.get(normalized, normalized)


class BackendRegistry:
    """Built-in descriptors layered with user overrides.

    The registry is read-only once constructed; callers rebuild it to pick up
    new configuration.
    """

    def __init__(self, overrides: Mapping[str, BackendOverride] | None = None) -> None:
        self._overrides: dict[str, BackendOverride] = {}
        for key, override in (overrides or {}).items():
            self._overrides[canonical_backend_id(key)] = override

    def ids(self) -> list[str]:
        """Return built-in ids followed by configured custom ids."""

        ordered = list(BUILTIN_BACKENDS)
        ordered.extend(key for key in self._overrides if key not in BUILTIN_BACKENDS)
        return ordered

    def resolve(self, backend_id: str) -> ResolvedBackend | None:
        """Resolve ``backend_id``; a blank command after merge means "absent"."""

        normalized = canonical_backend_id(backend_id)
        override = self._overrides.get(normalized)
        base = BUILTIN_BACKENDS.get(normalized)
        if base is None:
            if override is None:
                return None
            base = _EMPTY_DESCRIPTOR
        merged = merge_backend_descriptor(base, override)
        command = merged.command.strip()
        if not command:
            return None
        return ResolvedBackend(
            id=normalized,
            descriptor=dataclasses.replace(merged, command=command),
        )

    def require(self, backend_id: str) -> ResolvedBackend:
        resolved = self.resolve(backend_id)
        if resolved is None:
            raise UnknownBackendError(f"Unknown CLI backend: {backend_id}")
        return resolved


def resolve_backend(
    backend_id: str,
    overrides: Mapping[str, BackendOverride] | None = None,
) -> ResolvedBackend | None:
    """One-shot resolution against a fresh registry."""

    return BackendRegistry(overrides).resolve(backend_id)


_FIELD_ALIASES = {
    "argsTemplate": "args",
    "streamingArgs": "streaming_args",
    "streamingArgsTemplate": "streaming_args",
    "resumeArgs": "resume_args",
    "resumeArgsTemplate": "resume_args",
    "sessionArgs": "session_args",
    "clearEnv": "clear_env",
    "resumeOutput": "resume_output",
    "maxPromptArgChars": "max_prompt_arg_chars",
    "promptArg": "prompt_arg",
    "modelArg": "model_arg",
    "modelAliases": "model_aliases",
    "sessionArg": "session_arg",
    "sessionMode": "session_mode",
    "sessionIdFields": "session_id_fields",
    "systemPromptArg": "system_prompt_arg",
    "systemPromptEnvVar": "system_prompt_env_var",
    "systemPromptMode": "system_prompt_mode",
    "systemPromptWhen": "system_prompt_when",
    "imageArg": "image_arg",
    "imageMode": "image_mode",
}
_SEQUENCE_FIELDS = frozenset(
    {"args", "streaming_args", "resume_args", "session_args", "clear_env", "session_id_fields"},
)
_ENUM_FIELDS: dict[str, type] = {
    "output": OutputMode,
    "resume_output": OutputMode,
    "input": InputMode,
    "session_mode": SessionMode,
    "system_prompt_mode": SystemPromptMode,
    "system_prompt_when": SystemPromptWhen,
    "image_mode": ImageMode,
}
_OVERRIDE_FIELD_NAMES = frozenset(item.name for item in dataclasses.fields(BackendOverride))


def backend_override_from_mapping(raw: Mapping[str, Any], *, backend_id: str) -> BackendOverride:
    """Build an override from a camelCase or snake_case key/value structure."""

    values: dict[str, Any] = {}
    for key, value in raw.items():
        name = _FIELD_ALIASES.get(key, key)
        if name not in _OVERRIDE_FIELD_NAMES:
            raise ValueError(f"Unsupported backend option {key!r} for backend {backend_id!r}")
        if value is None:
            continue
        values[name] = _coerce_override_value(name, value, backend_id=backend_id)
    return BackendOverride(**values)


def _coerce_override_value(name: str, value: Any, *, backend_id: str) -> Any:  # noqa: PLR0911
    if name in _SEQUENCE_FIELDS:
        return _string_tuple(value, name=name, backend_id=backend_id)
    if name in _MAPPING_FIELDS:
        if not isinstance(value, Mapping):
            raise ValueError(f"Backend {backend_id!r} option {name!r} must be an object")
        return {str(key): str(item) for key, item in value.items()}
    if name in _ENUM_FIELDS:
        enum_type = _ENUM_FIELDS[name]
        try:
            return enum_type(str(value).strip().lower())
        except ValueError as error:
            allowed = ", ".join(member.value for member in enum_type)
            raise ValueError(
                f"Invalid {name} {value!r} for backend {backend_id!r}; expected one of {allowed}",
            ) from error
    if name == "serialize":
        if not isinstance(value, bool):
            raise ValueError(f"Backend {backend_id!r} option 'serialize' must be a boolean")
        return value
    if name == "max_prompt_arg_chars":
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(
                f"Backend {backend_id!r} option 'max_prompt_arg_chars' must be a positive integer",
            )
        return value
    if not isinstance(value, str):
        raise ValueError(f"Backend {backend_id!r} option {name!r} must be a string")
    return value


def _string_tuple(value: Any, *, name: str, backend_id: str) -> tuple[str, ...]:
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise ValueError(f"Backend {backend_id!r} option {name!r} must be a list of strings")
    return tuple(str(item) for item in value)
