"""Process-execution collaborators for CLI backends."""

from headless_agents.runtime.backend.base import (
    BackendRunError,
    ProcessExecutor,
    ProcessRunRequest,
    ProcessRunResult,
)
from headless_agents.runtime.backend.subprocess_executor import SubprocessExecutor

__all__ = [
    "BackendRunError",
    "ProcessExecutor",
    "ProcessRunRequest",
    "ProcessRunResult",
    "SubprocessExecutor",
]
