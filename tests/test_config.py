from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from headless_agents.config import (
    DEFAULT_TIMEOUT_SECONDS,
    Settings,
    load_backend_overrides,
    parse_backend_overrides,
)
from headless_agents.runtime.backends import CLAUDE_BACKEND_ID, GEMINI_BACKEND_ID

pytestmark = [
    allure.epic("Headless Agents Runtime"),
    allure.feature("Configuration"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.backends_file is None
    assert settings.models_file is None
    assert settings.default_backend == GEMINI_BACKEND_ID
    assert settings.timeout_seconds == DEFAULT_TIMEOUT_SECONDS
    assert settings.idle_timeout_seconds is None
    assert settings.workspace_dir == Path.cwd()
    assert settings.backend_overrides() == {}


def test_from_env_reads_values(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HEADLESS_AGENTS_BACKENDS_FILE", str(tmp_path / "backends.json"))
    monkeypatch.setenv("HEADLESS_AGENTS_MODELS_FILE", str(tmp_path / "models.json"))
    monkeypatch.setenv("HEADLESS_AGENTS_DEFAULT_BACKEND", "Claude_CLI")
    monkeypatch.setenv("HEADLESS_AGENTS_TIMEOUT_SECONDS", "90")
    monkeypatch.setenv("HEADLESS_AGENTS_IDLE_TIMEOUT_SECONDS", "15.5")
    monkeypatch.setenv("HEADLESS_AGENTS_WORKSPACE_DIR", str(tmp_path))

    settings = Settings.from_env()

    assert settings.backends_file == tmp_path / "backends.json"
    assert settings.models_file == tmp_path / "models.json"
    assert settings.default_backend == CLAUDE_BACKEND_ID
    assert settings.timeout_seconds == 90.0
    assert settings.idle_timeout_seconds == 15.5
    assert settings.workspace_dir == tmp_path


def test_zero_idle_timeout_disables_it(monkeypatch) -> None:
    monkeypatch.setenv("HEADLESS_AGENTS_IDLE_TIMEOUT_SECONDS", "0")

    assert Settings.from_env().idle_timeout_seconds is None


def test_from_env_rejects_non_numeric_timeout(monkeypatch) -> None:
    monkeypatch.setenv("HEADLESS_AGENTS_TIMEOUT_SECONDS", "soon")

    with pytest.raises(ValueError, match="HEADLESS_AGENTS_TIMEOUT_SECONDS"):
        Settings.from_env()


def test_validate_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="must be > 0"):
        Settings(timeout_seconds=0).validate()


def test_validate_rejects_negative_idle_timeout() -> None:
    with pytest.raises(ValueError, match="IDLE_TIMEOUT"):
        Settings(idle_timeout_seconds=-1).validate()


def test_backend_overrides_are_loaded_from_file(tmp_path: Path) -> None:
    path = tmp_path / "backends.json"
    path.write_text(
        json.dumps({CLAUDE_BACKEND_ID: {"command": "/opt/claude", "serialize": False}}),
        "utf-8",
    )

    overrides = Settings(backends_file=path).backend_overrides()

    assert overrides[CLAUDE_BACKEND_ID].command == "/opt/claude"
    assert overrides[CLAUDE_BACKEND_ID].serialize is False


def test_missing_backends_file_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Backends file not found"):
        load_backend_overrides(tmp_path / "missing.json")


def test_invalid_json_in_backends_file_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "backends.json"
    path.write_text("{not json", "utf-8")

    with pytest.raises(ValueError, match="Invalid JSON in backends file"):
        load_backend_overrides(path)


def test_overrides_must_be_objects() -> None:
    with pytest.raises(ValueError, match="JSON object keyed by backend id"):
        parse_backend_overrides(["claude-cli"])
    with pytest.raises(ValueError, match="override must be an object"):
        parse_backend_overrides({"claude-cli": "claude"})
