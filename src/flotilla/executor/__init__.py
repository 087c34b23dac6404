"""Task executor abstractions and the Codex CLI executor."""

from .runner import (
    CodexExecutor,
    CodexNotFoundError,
    CodexRunnerError,
    ExecutionRequest,
    Permissions,
    ProgressEvent,
    TaskExecution,
    TaskExecutor,
    TaskResult,
)

__all__ = [
    "CodexExecutor",
    "CodexNotFoundError",
    "CodexRunnerError",
    "ExecutionRequest",
    "Permissions",
    "ProgressEvent",
    "TaskExecution",
    "TaskExecutor",
    "TaskResult",
]
