from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from headless_agents import __version__
from headless_agents.main import headless_agents

pytestmark = [
    allure.epic("Headless Agents Runtime"),
    allure.feature("Command Line"),
]


def test_version_option() -> None:
    result = CliRunner().invoke(headless_agents, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_backends_list_marks_default_and_includes_custom(echo_backends_file: Path) -> None:
    result = CliRunner().invoke(headless_agents, ["backends", "list"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "CLI backends:"
    assert any(line.startswith("  claude-cli command=claude") for line in lines)
    assert any(line.startswith("  gemini-cli-headless * command=gemini") for line in lines)
    assert any(line.startswith("  echo-agent command=") for line in lines)


def test_backends_list_shows_disabled_backend(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "backends.json"
    path.write_text(json.dumps({"codex-cli": {"command": "  "}}), "utf-8")
    monkeypatch.setenv("HEADLESS_AGENTS_BACKENDS_FILE", str(path))

    result = CliRunner().invoke(headless_agents, ["backends", "list"])

    assert result.exit_code == 0, result.output
    assert "  codex-cli (disabled)" in result.output.splitlines()


def test_backends_show_prints_merged_descriptor() -> None:
    result = CliRunner().invoke(headless_agents, ["backends", "show", "Gemini_CLI"])

    assert result.exit_code == 0, result.output
    assert "Backend: gemini-cli-headless" in result.output
    assert "  command=gemini" in result.output
    assert "system_prompt_env_var=GEMINI_SYSTEM_MD" in result.output
    assert "  serialize=yes" in result.output


def test_backends_show_unknown_backend_fails() -> None:
    result = CliRunner().invoke(headless_agents, ["backends", "show", "nope"])

    assert result.exit_code != 0
    assert "Unknown CLI backend: nope" in result.output
    assert "is unknown or disabled" in result.output


def test_invalid_backends_file_is_reported(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "backends.json"
    path.write_text("[]", "utf-8")
    monkeypatch.setenv("HEADLESS_AGENTS_BACKENDS_FILE", str(path))

    result = CliRunner().invoke(headless_agents, ["backends", "list"])

    assert result.exit_code != 0
    assert "JSON object keyed by backend id" in result.output


def test_run_prints_reply_and_summary(echo_backends_file: Path) -> None:
    result = CliRunner().invoke(
        headless_agents,
        ["run", "--backend", "echo-agent", "--model", "fast", "hello world"],
    )

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "echo: hello world"
    assert lines[1] == ""
    assert lines[2].startswith("Run summary: provider=echo-agent model=echo-fast-1 session_id=")
    assert lines[3] == "Usage: input=2 output=3 total=5"


def test_run_stream_prints_deltas_once(echo_backends_file: Path) -> None:
    result = CliRunner().invoke(
        headless_agents,
        ["run", "--backend", "echo-agent", "--stream", "--system-prompt", "Be brief.", "ping"],
    )

    assert result.exit_code == 0, result.output
    assert result.output.startswith("echo: ping\n")
    assert result.output.count("echo: ping") == 1
    assert "Run summary: provider=echo-agent model=default" in result.output


def test_run_uses_default_backend_from_env(echo_backends_file: Path, monkeypatch) -> None:
    monkeypatch.setenv("HEADLESS_AGENTS_DEFAULT_BACKEND", "echo-agent")

    result = CliRunner().invoke(headless_agents, ["run", "--session-id", "chat-7", "hi"])

    assert result.exit_code == 0, result.output
    assert result.output.startswith("echo: hi\n")


def test_run_failure_reports_classified_reason(echo_backends_file: Path, monkeypatch) -> None:
    monkeypatch.setenv("HEADLESS_AGENTS_ECHO_FAIL", "41:Not logged in")

    result = CliRunner().invoke(headless_agents, ["run", "--backend", "echo-agent", "hi"])

    assert result.exit_code != 0
    assert (
        "Run failed: provider=echo-agent model=default reason=auth status=fatal exit_code=41"
        in result.output
    )
    assert "  Not logged in" in result.output
    assert "CLI backend run failed." in result.output


def test_run_unknown_backend_is_usage_error(echo_backends_file: Path) -> None:
    result = CliRunner().invoke(headless_agents, ["run", "--backend", "nope", "hi"])

    assert result.exit_code != 0
    assert "Unknown CLI backend: nope" in result.output


def test_models_lists_builtin_and_file_entries(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "models.json"
    path.write_text(
        json.dumps([{"id": "sonnet", "name": "Claude Sonnet", "provider": "claude-cli"}]),
        "utf-8",
    )
    monkeypatch.setenv("HEADLESS_AGENTS_MODELS_FILE", str(path))

    result = CliRunner().invoke(headless_agents, ["models"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "Models:"
    assert lines[1] == "  claude-cli/sonnet name='Claude Sonnet' context_window=- vision=no"
    assert (
        "  gemini-cli-headless/gemini-2.5-pro name='Gemini 2.5 Pro' "
        "context_window=2097152 vision=yes"
    ) in lines


def test_models_provider_filter() -> None:
    only_claude = CliRunner().invoke(headless_agents, ["models", "--provider", "claude-cli"])
    only_gemini = CliRunner().invoke(
        headless_agents,
        ["models", "--provider", "GEMINI-CLI-HEADLESS"],
    )

    assert only_claude.output.strip() == "No models found."
    assert "gemini-cli-headless/auto-gemini-3" in only_gemini.output
