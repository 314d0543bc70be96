"""Runtime configuration for the headless agents runtime."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from headless_agents.runtime.backends import (
    GEMINI_BACKEND_ID,
    BackendOverride,
    backend_override_from_mapping,
    canonical_backend_id,
)

DEFAULT_TIMEOUT_SECONDS = 600.0


@dataclass(slots=True)
class Settings:
    """Application settings loaded from ``HEADLESS_AGENTS_*`` variables."""

    backends_file: Path | None = None
    models_file: Path | None = None
    default_backend: str = GEMINI_BACKEND_ID
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    idle_timeout_seconds: float | None = None
    workspace_dir: Path = field(default_factory=Path.cwd)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        backends_file = os.getenv("HEADLESS_AGENTS_BACKENDS_FILE", "").strip()
        models_file = os.getenv("HEADLESS_AGENTS_MODELS_FILE", "").strip()
        workspace_dir = os.getenv("HEADLESS_AGENTS_WORKSPACE_DIR", "").strip()
        idle_timeout = _env_float("HEADLESS_AGENTS_IDLE_TIMEOUT_SECONDS", default=0.0)
        return cls(
            backends_file=Path(backends_file) if backends_file else None,
            models_file=Path(models_file) if models_file else None,
            default_backend=canonical_backend_id(
                os.getenv("HEADLESS_AGENTS_DEFAULT_BACKEND", GEMINI_BACKEND_ID),
            ),
            timeout_seconds=_env_float(
                "HEADLESS_AGENTS_TIMEOUT_SECONDS",
                default=DEFAULT_TIMEOUT_SECONDS,
            ),
            idle_timeout_seconds=idle_timeout or None,
            workspace_dir=Path(workspace_dir) if workspace_dir else Path.cwd(),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.timeout_seconds <= 0:
            raise ValueError("HEADLESS_AGENTS_TIMEOUT_SECONDS must be > 0.")
        if self.idle_timeout_seconds is not None and self.idle_timeout_seconds < 0:
            raise ValueError("HEADLESS_AGENTS_IDLE_TIMEOUT_SECONDS must be >= 0.")
        if not self.default_backend:
            raise ValueError("HEADLESS_AGENTS_DEFAULT_BACKEND must not be empty.")

    def backend_overrides(self) -> dict[str, BackendOverride]:
        if self.backends_file is None:
            return {}
        return load_backend_overrides(self.backends_file)


def load_backend_overrides(path: Path) -> dict[str, BackendOverride]:
    """Read a JSON object mapping backend id to a partial descriptor."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except FileNotFoundError as error:
        raise ValueError(f"Backends file not found: {path}") from error
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in backends file {path}: {error}") from error
    return parse_backend_overrides(payload)


def parse_backend_overrides(payload: object) -> dict[str, BackendOverride]:
    if not isinstance(payload, Mapping):
        raise ValueError("Backend overrides must be a JSON object keyed by backend id.")

    overrides: dict[str, BackendOverride] = {}
    for backend_id, raw in payload.items():
        if not isinstance(raw, Mapping):
            raise ValueError(f"Backend {backend_id!r} override must be an object")
        overrides[str(backend_id)] = backend_override_from_mapping(raw, backend_id=str(backend_id))
    return overrides


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error
