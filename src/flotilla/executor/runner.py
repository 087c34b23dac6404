"""Task executor interface and the Codex CLI implementation."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Protocol

from .utils import sanitize_environment, tail

logger = logging.getLogger(__name__)

_INVALID_HANDLE_MARKERS = (
    "session not found",
    "no session found",
    "invalid session",
    "conversation not found",
    "thread not found",
    "no rollout found",
)
_STREAM_LIMIT = 4 * 1024 * 1024


class CodexRunnerError(RuntimeError):
    """Base class for Codex runner errors."""


class CodexNotFoundError(CodexRunnerError):
    """Raised when the Codex CLI executable cannot be located."""


class Permissions(str, Enum):
    READ_ONLY = "read-only"
    WORKSPACE_WRITE = "workspace-write"


@dataclass(slots=True)
class ProgressEvent:
    """One incremental update from a running invocation."""

    kind: str
    text: str
    data: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass(slots=True)
class TaskResult:
    """Terminal outcome of one executor invocation."""

    success: bool
    output: str = ""
    error: str | None = None
    rate_limited: bool = False
    duration_ms: int = 0
    handle: str | None = None
    handle_invalid: bool = False


@dataclass(slots=True)
class ExecutionRequest:
    prompt: str
    handle: str | None = None
    permissions: Permissions = Permissions.WORKSPACE_WRITE
    model: str | None = None
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    session_id: str | None = None


class TaskExecution:
    """A running invocation: a stream of progress events plus one terminal result."""

    def __init__(self, *, tail_chars: int = 8000) -> None:
        loop = asyncio.get_running_loop()
        self._events: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        self._result: asyncio.Future[TaskResult] = loop.create_future()
        self._tail_chars = tail_chars
        self._recent = ""
        self._task: asyncio.Task | None = None

    def attach(self, task: asyncio.Task) -> None:
        self._task = task

    def emit(self, event: ProgressEvent) -> None:
        if self._result.done():
            return
        self._recent = tail(self._recent + event.text + "\n", self._tail_chars)
        self._events.put_nowait(event)

    def finish(self, result: TaskResult) -> None:
        if self._result.done():
            return
        self._result.set_result(result)
        self._events.put_nowait(None)

    def fail(self, exc: BaseException) -> None:
        if self._result.done():
            return
        self._result.set_exception(exc)
        self._events.put_nowait(None)

    def done(self) -> bool:
        return self._result.done()

    def recent_output(self) -> str:
        return self._recent

    async def progress(self) -> AsyncIterator[ProgressEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def result(self) -> TaskResult:
        return await asyncio.shield(self._result)

    async def cancel(self) -> None:
        """Stop the underlying invocation."""

        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        if not self._result.done():
            self.fail(asyncio.CancelledError())


class TaskExecutor(Protocol):
    """Anything that can run one unit of work."""

    def invoke(self, request: ExecutionRequest) -> TaskExecution:
        ...


class CodexExecutor:
    """Run work through ``codex exec`` and stream its JSONL output."""

    def __init__(
        self,
        executable: Path | None = None,
        *,
        default_model: str | None = None,
        rate_limit_detector: Callable[[str], bool] | None = None,
        tail_chars: int = 8000,
    ) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._default_model = default_model
        self._detect_rate_limit = rate_limit_detector
        self._tail_chars = tail_chars

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise CodexNotFoundError(f"Codex executable not found at {candidate}")

        binary = shutil.which("codex")
        if binary is None:
            raise CodexNotFoundError("Codex CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> str:
        process = await asyncio.create_subprocess_exec(
            str(self._executable_path),
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment(),
        )
        stdout, _ = await process.communicate()
        return stdout.decode("utf-8", errors="replace").strip()

    def build_args(self, request: ExecutionRequest) -> list[str]:
        args: list[str] = ["exec", "--json", "--sandbox", request.permissions.value]
        model = request.model or self._default_model
        if model:
            args += ["--model", model]
        if request.cwd is not None:
            args += ["--cd", str(request.cwd)]
        if request.handle:
            args += ["resume", request.handle]
        args.append(request.prompt)
        return args

    def invoke(self, request: ExecutionRequest) -> TaskExecution:
        execution = TaskExecution(tail_chars=self._tail_chars)
        task = asyncio.create_task(self._run(request, execution), name=f"codex:{request.session_id}")
        execution.attach(task)
        return execution

    async def _run(self, request: ExecutionRequest, execution: TaskExecution) -> None:
        started = time.monotonic()
        cmd = [str(self._executable_path), *self.build_args(request)]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(request.cwd) if request.cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(request.env),
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            execution.finish(TaskResult(success=False, error=str(exc)))
            return

        handle = request.handle
        messages: list[str] = []
        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\n")
                if not line:
                    continue
                event = parse_event(line)
                handle = event.data.get("handle", handle) if event.data else handle
                if event.kind == "message":
                    messages.append(event.text)
                execution.emit(event)
            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace")
        except asyncio.CancelledError:
            await _kill(process, stderr_task)
            raise
        except (OSError, ValueError) as exc:
            await _kill(process, stderr_task)
            logger.error("Codex output could not be read", extra={"session_id": request.session_id})
            execution.finish(
                TaskResult(
                    success=False,
                    error=f"codex output could not be read: {exc}",
                    duration_ms=int((time.monotonic() - started) * 1000),
                    handle=handle,
                )
            )
            return

        output = "\n".join(messages) if messages else execution.recent_output()
        success = returncode == 0
        error = None if success else (stderr.strip() or f"codex exited with code {returncode}")
        combined = f"{stderr}\n{execution.recent_output()}"
        rate_limited = (
            not success and self._detect_rate_limit is not None and self._detect_rate_limit(combined)
        )
        handle_invalid = (
            not success
            and request.handle is not None
            and any(marker in combined.lower() for marker in _INVALID_HANDLE_MARKERS)
        )
        execution.finish(
            TaskResult(
                success=success,
                output=output,
                error=error,
                rate_limited=rate_limited,
                duration_ms=int((time.monotonic() - started) * 1000),
                handle=None if handle_invalid else handle,
                handle_invalid=handle_invalid,
            )
        )


async def _kill(process: asyncio.subprocess.Process, stderr_task: asyncio.Task) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()
    stderr_task.cancel()


def parse_event(line: str) -> ProgressEvent:
    """Turn one line of ``codex exec --json`` output into a progress event."""

    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return ProgressEvent(kind="text", text=line)
    if not isinstance(payload, dict):
        return ProgressEvent(kind="text", text=line)

    data: dict[str, Any] = {"raw": payload}
    handle = payload.get("thread_id") or payload.get("session_id")
    if isinstance(handle, str) and handle:
        data["handle"] = handle

    event_type = str(payload.get("type", "event"))
    item = payload.get("item") if isinstance(payload.get("item"), dict) else None
    if item is not None:
        text = item.get("text") or item.get("command") or ""
        if item.get("type") == "agent_message" and event_type == "item.completed":
            return ProgressEvent(kind="message", text=str(text), data=data)
        if item.get("type") in {"command_execution", "mcp_tool_call", "file_change"}:
            return ProgressEvent(kind="tool", text=str(text), data=data)
        return ProgressEvent(kind=event_type, text=str(text), data=data)

    message = payload.get("message") or payload.get("error") or ""
    if isinstance(message, dict):
        message = message.get("message", "")
    return ProgressEvent(kind=event_type, text=str(message), data=data)


def serialize_result(result: TaskResult) -> str:
    """Serialize a result for storage in the event journal."""

    return json.dumps(
        {
            "success": result.success,
            "output": result.output,
            "error": result.error,
            "rate_limited": result.rate_limited,
            "duration_ms": result.duration_ms,
            "handle": result.handle,
        }
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
    "parse_event",
    "serialize_result",
]
