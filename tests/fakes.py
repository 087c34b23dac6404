"""Scripted stand-ins for the Codex executor."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Sequence

from flotilla.executor import ExecutionRequest, ProgressEvent, TaskExecution, TaskResult


@dataclass(slots=True)
class ScriptedRun:
    """Behaviour of one fake invocation."""

    result: TaskResult
    progress: Sequence[str] = ()
    delay: float = 0.0
    gate: asyncio.Event | None = None
    side_effect: Callable[[ExecutionRequest], Awaitable[None] | None] | None = None


class FakeTaskExecutor:
    """Test double that replays scripted invocations."""

    def __init__(
        self,
        script: Iterable[ScriptedRun | TaskResult]
        | Callable[[ExecutionRequest], ScriptedRun | TaskResult]
        | None = None,
    ) -> None:
        if callable(script):
            self._responder = script
            self._queue: list[ScriptedRun | TaskResult] = []
        else:
            self._responder = None
            self._queue = list(script or [])
        self._requests: list[ExecutionRequest] = []
        self.active = 0
        self.max_active = 0

    @property
    def requests(self) -> list[ExecutionRequest]:
        return self._requests

    def invoke(self, request: ExecutionRequest) -> TaskExecution:
        self._requests.append(request)
        if self._responder is not None:
            step = self._responder(request)
        elif self._queue:
            step = self._queue.pop(0)
        else:
            step = TaskResult(success=True, output="")
        if isinstance(step, TaskResult):
            step = ScriptedRun(result=step)

        execution = TaskExecution()
        execution.attach(asyncio.create_task(self._play(request, step, execution)))
        return execution

    async def _play(self, request: ExecutionRequest, step: ScriptedRun, execution: TaskExecution) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        started = time.monotonic()
        try:
            for line in step.progress:
                execution.emit(ProgressEvent(kind="text", text=line))
                await asyncio.sleep(0)
            if step.gate is not None:
                await step.gate.wait()
            if step.delay:
                await asyncio.sleep(step.delay)
            if step.side_effect is not None:
                maybe = step.side_effect(request)
                if maybe is not None:
                    await maybe
        except Exception as exc:
            execution.fail(exc)
            return
        finally:
            self.active -= 1
        result = step.result
        if not result.duration_ms:
            result = TaskResult(
                success=result.success,
                output=result.output,
                error=result.error,
                rate_limited=result.rate_limited,
                duration_ms=int((time.monotonic() - started) * 1000),
                handle=result.handle,
                handle_invalid=result.handle_invalid,
            )
        execution.finish(result)
