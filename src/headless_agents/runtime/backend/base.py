"""Process-execution interface consumed by the runner."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ProcessRunRequest:
    """Inputs required to execute one backend process."""

    argv: tuple[str, ...]
    cwd: Path
    env: dict[str, str]
    timeout_seconds: float
    stdin: str | None = None
    idle_timeout_seconds: float | None = None
    on_stdout_chunk: Callable[[str], None] | None = field(default=None, repr=False)


@dataclass(slots=True)
class ProcessRunResult:
    """Execution outcome from a process executor."""

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False


class BackendRunError(RuntimeError):
    """Backend process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ProcessExecutor(Protocol):
    """Protocol implemented by process executors."""

    def run(self, request: ProcessRunRequest) -> ProcessRunResult:
        """Run the process, streaming stdout chunks, and return its outcome."""
