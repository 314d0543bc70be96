from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from headless_agents.runtime.backend import BackendRunError
from headless_agents.runtime.backends import (
    CLAUDE_BACKEND_ID,
    CODEX_BACKEND_ID,
    GEMINI_BACKEND_ID,
    BackendOverride,
    BackendRegistry,
    UnknownBackendError,
)
from headless_agents.runtime.events import AssistantEvent, InitEvent, ResultEvent
from headless_agents.runtime.failure_classifier import (
    FailoverError,
    FailoverReason,
    FailoverStatus,
)
from headless_agents.runtime.models import (
    ImageAttachment,
    RunRequest,
    StreamCallbacks,
    UsageStats,
)
from headless_agents.runtime.runner import CliAgentRunner
from headless_agents.runtime.staging import TempDirStager

pytestmark = [
    allure.epic("Headless Agents Runtime"),
    allure.feature("Run Operation"),
]


def _jsonl(*payloads: dict[str, object]) -> str:
    return "".join(json.dumps(payload) + "\n" for payload in payloads)


def _request(tmp_path: Path, **kwargs) -> RunRequest:
    values: dict[str, object] = {
        "session_id": "caller-session",
        "provider": GEMINI_BACKEND_ID,
        "prompt": "What is the answer?",
        "workspace_dir": tmp_path,
        "timeout_seconds": 30,
    }
    values.update(kwargs)
    return RunRequest(**values)


def _runner(executor, tmp_path: Path, registry: BackendRegistry | None = None) -> CliAgentRunner:
    return CliAgentRunner(
        registry or BackendRegistry(),
        executor=executor,
        stager=TempDirStager(root=tmp_path / "staging"),
        base_env={"PATH": "/usr/bin", "ANTHROPIC_API_KEY": "secret"},
    )


def _gemini_stream() -> list[str]:
    stream = _jsonl(
        {"type": "init", "session_id": "gemini-sess-1", "model": "gemini-2.5-pro"},
        {"type": "thinking", "content": "Considering."},
        {"type": "message", "role": "assistant", "content": "The answer is ", "delta": True},
        {"type": "message", "role": "assistant", "content": "42.", "delta": True},
        {"type": "result", "status": "success", "stats": {"input_tokens": 8, "output_tokens": 4}},
    )
    # Split mid-line to exercise reassembly.
    return [stream[:50], stream[50:170], stream[170:]]


def test_streaming_run_dispatches_callbacks_and_builds_result(
    make_executor,
    tmp_path: Path,
) -> None:
    executor = make_executor(_gemini_stream())
    partials: list[dict[str, object]] = []
    reasoning: list[dict[str, object]] = []
    events: list[object] = []

    result = _runner(executor, tmp_path).run(
        _request(
            tmp_path,
            model="pro",
            callbacks=StreamCallbacks(
                on_partial_reply=partials.append,
                on_reasoning_stream=reasoning.append,
                on_agent_event=events.append,
            ),
        ),
    )

    assert partials == [{"text": "The answer is "}, {"text": "42."}]
    assert reasoning == [{"text": "Considering."}]
    assert isinstance(events[0], InitEvent)
    assert isinstance(events[-1], ResultEvent)
    assert [event.delta for event in events if isinstance(event, AssistantEvent)] == [
        "The answer is ",
        "42.",
    ]
    assert result.text == "The answer is 42."
    assert result.session_id == "gemini-sess-1"
    assert result.provider == GEMINI_BACKEND_ID
    assert result.model == "gemini-2.5-pro"
    assert result.usage == UsageStats(input=8, output=4)
    assert result.stream_errors == ()

    argv = executor.requests[0].argv
    assert argv[argv.index("-m") + 1] == "gemini-2.5-pro"
    assert argv[-2:] == ("-p", "What is the answer?")


def test_run_passes_cwd_timeouts_and_environment(make_executor, tmp_path: Path) -> None:
    executor = make_executor(_gemini_stream())

    _runner(executor, tmp_path).run(
        _request(tmp_path, provider=CLAUDE_BACKEND_ID, idle_timeout_seconds=5),
    )

    process_request = executor.requests[0]
    env = executor.env_snapshots[0]
    assert process_request.cwd == tmp_path
    assert process_request.timeout_seconds == 30
    assert process_request.idle_timeout_seconds == 5
    assert "ANTHROPIC_API_KEY" not in env
    assert env["PATH"] == "/usr/bin"
    assert env["HEADLESS_AGENTS_SESSION_ID"] == "caller-session"
    assert env["HEADLESS_AGENTS_MODEL_PROVIDER"] == CLAUDE_BACKEND_ID


def test_json_backend_result_is_extracted_after_exit(make_executor, tmp_path: Path) -> None:
    stdout = json.dumps(
        {
            "type": "result",
            "result": "Done.",
            "session_id": "claude-sess-9",
            "usage": {"input_tokens": 3, "output_tokens": 1},
        },
    )
    executor = make_executor([stdout])

    result = _runner(executor, tmp_path).run(_request(tmp_path, provider=CLAUDE_BACKEND_ID))

    assert result.text == "Done."
    assert result.session_id == "claude-sess-9"
    assert result.usage == UsageStats(input=3, output=1)
    assert result.model == "default"


def test_streaming_values_win_over_extracted_ones(make_executor, tmp_path: Path) -> None:
    executor = make_executor(
        [
            _jsonl(
                {"type": "init", "session_id": "from-init"},
                {"type": "message", "role": "assistant", "content": "streamed"},
                {"type": "result", "session_id": "from-result", "stats": {"total_tokens": 5}},
            ),
        ],
    )

    result = _runner(executor, tmp_path).run(_request(tmp_path))

    assert result.text == "streamed"
    assert result.session_id == "from-init"
    assert result.usage == UsageStats(total=5)


def test_session_falls_back_to_caller_session_id(make_executor, tmp_path: Path) -> None:
    executor = make_executor(["plain text reply\n"])
    registry = BackendRegistry({"plain": BackendOverride(command="plain-agent")})

    result = _runner(executor, tmp_path, registry).run(_request(tmp_path, provider="plain"))

    assert result.text == "plain text reply"
    assert result.session_id == "caller-session"


def test_resume_uses_resume_template(make_executor, tmp_path: Path) -> None:
    executor = make_executor(_gemini_stream())

    _runner(executor, tmp_path).run(_request(tmp_path, cli_session_id="prior-id"))

    argv = executor.requests[0].argv
    assert argv[argv.index("--resume") + 1] == "prior-id"


def test_stream_errors_without_text_become_warning(make_executor, tmp_path: Path) -> None:
    executor = make_executor(
        [
            _jsonl(
                {"type": "init", "session_id": "s"},
                {"type": "error", "message": "Loop detected"},
                {"type": "error", "message": "Stopped early"},
                {"type": "result", "status": "error"},
            ),
        ],
    )

    result = _runner(executor, tmp_path).run(_request(tmp_path))

    assert result.text == "⚠️ Loop detected\nStopped early"
    assert result.stream_errors == ("Loop detected", "Stopped early")


def test_nonzero_exit_raises_classified_failover(make_executor, tmp_path: Path) -> None:
    executor = make_executor(exit_code=53, stderr="Max session turns reached\n")

    with pytest.raises(FailoverError) as caught:
        _runner(executor, tmp_path).run(_request(tmp_path, model="flash"))

    error = caught.value
    assert error.reason is FailoverReason.RATE_LIMIT
    assert error.status is FailoverStatus.RETRYABLE
    assert error.provider == GEMINI_BACKEND_ID
    assert error.model == "gemini-2.5-flash"
    assert error.exit_code == 53
    assert str(error) == "Max session turns reached"


def test_timeout_raises_retryable_failover(make_executor, tmp_path: Path) -> None:
    executor = make_executor(["partial"], exit_code=124, timed_out=True)

    with pytest.raises(FailoverError) as caught:
        _runner(executor, tmp_path).run(_request(tmp_path, provider=CODEX_BACKEND_ID))

    assert caught.value.reason is FailoverReason.TIMEOUT
    assert caught.value.retryable is True


def test_spawn_failure_becomes_failover(make_executor, tmp_path: Path) -> None:
    executor = make_executor(
        error=BackendRunError("CLI backend command not found: gemini", transient=False),
    )

    with pytest.raises(FailoverError) as caught:
        _runner(executor, tmp_path).run(_request(tmp_path))

    assert caught.value.reason is FailoverReason.UNKNOWN
    assert caught.value.status is FailoverStatus.FATAL
    assert isinstance(caught.value.__cause__, BackendRunError)


def test_unexpected_executor_error_is_classified(make_executor, tmp_path: Path) -> None:
    executor = make_executor(error=TimeoutError("429 Too Many Requests: operation timed out"))

    with pytest.raises(FailoverError) as caught:
        _runner(executor, tmp_path).run(_request(tmp_path, model="pro"))

    assert caught.value.reason is FailoverReason.RATE_LIMIT
    assert caught.value.status is FailoverStatus.RETRYABLE
    assert caught.value.model == "gemini-2.5-pro"
    assert caught.value.exit_code is None
    assert isinstance(caught.value.__cause__, TimeoutError)


def test_unknown_backend_is_raised_before_execution(make_executor, tmp_path: Path) -> None:
    executor = make_executor()

    with pytest.raises(UnknownBackendError):
        _runner(executor, tmp_path).run(_request(tmp_path, provider="nope"))

    assert executor.requests == []


def test_staged_files_exist_during_run_and_are_released_after(
    make_executor,
    tmp_path: Path,
) -> None:
    executor = make_executor(exit_code=41, stderr="auth required")
    image = ImageAttachment(data=b"\x89PNG fake", mime_type="image/png")

    with pytest.raises(FailoverError) as caught:
        _runner(executor, tmp_path).run(
            _request(tmp_path, system_prompt="Be precise.", images=(image,)),
        )

    assert caught.value.reason is FailoverReason.AUTH
    assert caught.value.status is FailoverStatus.FATAL
    assert executor.staged_files_seen == [True]
    argv = executor.requests[0].argv
    assert "image-1.png" in argv[-1]
    assert list((tmp_path / "staging").iterdir()) == []


def test_staged_files_are_released_after_success(make_executor, tmp_path: Path) -> None:
    executor = make_executor(_gemini_stream())

    _runner(executor, tmp_path).run(_request(tmp_path, system_prompt="Be precise."))

    system_md = executor.env_snapshots[0]["GEMINI_SYSTEM_MD"]
    assert system_md.endswith("system-prompt.md")
    assert not Path(system_md).exists()


def test_staged_files_are_released_when_callback_raises(
    make_executor,
    tmp_path: Path,
) -> None:
    executor = make_executor(_gemini_stream())
    image = ImageAttachment(data=b"\x89PNG fake", mime_type="image/png")

    def explode(payload: dict[str, object]) -> None:
        raise RuntimeError(f"consumer broke on {payload['text']!r}")

    with pytest.raises(RuntimeError, match="consumer broke") as caught:
        _runner(executor, tmp_path).run(
            _request(
                tmp_path,
                system_prompt="Be precise.",
                images=(image,),
                callbacks=StreamCallbacks(on_partial_reply=explode),
            ),
        )

    assert type(caught.value) is RuntimeError
    assert executor.staged_files_seen == [True]
    assert list((tmp_path / "staging").iterdir()) == []


def test_echo_agent_round_trip(echo_registry: BackendRegistry, tmp_path: Path) -> None:
    runner = CliAgentRunner(echo_registry, stager=TempDirStager(root=tmp_path / "staging"))
    partials: list[dict[str, object]] = []

    first = runner.run(
        _request(
            tmp_path,
            provider="echo-agent",
            prompt="ping",
            model="fast",
            system_prompt="Answer briefly.",
            callbacks=StreamCallbacks(on_partial_reply=partials.append),
        ),
    )
    second = runner.run(
        _request(tmp_path, provider="echo-agent", prompt="again", cli_session_id=first.session_id),
    )

    assert first.text == "echo: ping"
    assert "".join(str(item["text"]) for item in partials) == "echo: ping"
    assert first.model == "echo-fast-1"
    assert first.usage == UsageStats(input=1, output=2, total=3)
    assert first.session_id != "caller-session"
    assert second.session_id == first.session_id
    assert second.text == "echo: again"
