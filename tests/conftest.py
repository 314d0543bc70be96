"""Shared test fixtures."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

from headless_agents.config import parse_backend_overrides
from headless_agents.runtime.backend.base import ProcessRunRequest, ProcessRunResult
from headless_agents.runtime.backends import BackendRegistry

ECHO_BACKEND_ID = "echo-agent"
_ECHO_BASE_ARGS = [
    "-m",
    "headless_agents.runtime.backend.echo_agent",
    "--output-format",
    "stream-json",
    "--yolo",
]

_ENV_VARS = (
    "HEADLESS_AGENTS_BACKENDS_FILE",
    "HEADLESS_AGENTS_MODELS_FILE",
    "HEADLESS_AGENTS_DEFAULT_BACKEND",
    "HEADLESS_AGENTS_TIMEOUT_SECONDS",
    "HEADLESS_AGENTS_IDLE_TIMEOUT_SECONDS",
    "HEADLESS_AGENTS_WORKSPACE_DIR",
    "HEADLESS_AGENTS_ECHO_FAIL",
)


def echo_backend_config() -> dict[str, object]:
    """Override entry that registers the local echo agent as a backend."""

    return {
        "command": sys.executable,
        "args": _ECHO_BASE_ARGS,
        "resumeArgs": [*_ECHO_BASE_ARGS, "--resume", "{sessionId}"],
        "output": "jsonl",
        "promptArg": "-p",
        "modelArg": "-m",
        "modelAliases": {"fast": "echo-fast-1"},
        "sessionIdFields": ["session_id"],
        "systemPromptEnvVar": "GEMINI_SYSTEM_MD",
        "systemPromptMode": "replace",
        "systemPromptWhen": "always",
    }


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def echo_backends_file(tmp_path: Path, monkeypatch) -> Path:
    """Point HEADLESS_AGENTS_BACKENDS_FILE at a config with the echo agent."""

    path = tmp_path / "backends.json"
    path.write_text(json.dumps({ECHO_BACKEND_ID: echo_backend_config()}), "utf-8")
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    monkeypatch.setenv("HEADLESS_AGENTS_BACKENDS_FILE", str(path))
    monkeypatch.setenv("HEADLESS_AGENTS_WORKSPACE_DIR", str(workspace))
    monkeypatch.setenv("HEADLESS_AGENTS_TIMEOUT_SECONDS", "60")
    return path


class FakeExecutor:
    """Records requests and replays canned stdout in the given chunks."""

    def __init__(
        self,
        chunks: list[str] | None = None,
        *,
        exit_code: int = 0,
        stderr: str = "",
        timed_out: bool = False,
        error: Exception | None = None,
    ) -> None:
        self.chunks = chunks or []
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out
        self.error = error
        self.requests: list[ProcessRunRequest] = []
        self.env_snapshots: list[dict[str, str]] = []
        self.staged_files_seen: list[bool] = []

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        self.requests.append(request)
        self.env_snapshots.append(dict(request.env))
        system_md = request.env.get("GEMINI_SYSTEM_MD")
        if system_md:
            self.staged_files_seen.append(Path(system_md).exists())
        if self.error is not None:
            raise self.error
        for chunk in self.chunks:
            if request.on_stdout_chunk is not None:
                request.on_stdout_chunk(chunk)
        return ProcessRunResult(
            exit_code=self.exit_code,
            stdout="".join(self.chunks),
            stderr=self.stderr,
            timed_out=self.timed_out,
        )


@pytest.fixture()
def make_executor() -> type[FakeExecutor]:
    return FakeExecutor


@pytest.fixture()
def echo_registry() -> BackendRegistry:
    """Registry with the local echo agent registered next to the built-ins."""

    return BackendRegistry(
        parse_backend_overrides({ECHO_BACKEND_ID: echo_backend_config()}),
    )
