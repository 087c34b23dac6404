"""Bucketed priority queue serializing repository mutations.

Local operations are bucketed by working directory and run one at a time per
bucket, while buckets for different directories run concurrently. Global
operations share one bucket and are exclusive with everything: a global
operation starts only once no local operation is running, and no new local
operation starts while a global one is running or waiting.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Awaitable, Callable

from .errors import GitError, GitTimeoutError, QueueClearedError, QueueFullError

logger = logging.getLogger(__name__)

GLOBAL_BUCKET = "<global>"


class Priority(IntEnum):
    HIGH = 0
    NORMAL = 1
    LOW = 2


@dataclass(slots=True, eq=False)
class QueuedOperation:
    """One pending repository mutation."""

    id: str
    workdir: str
    priority: Priority
    label: str
    is_global: bool
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future
    enqueued_at: float
    attempts: int = 0


@dataclass(slots=True)
class _Counters:
    total_processed: int = 0
    total_failed: int = 0
    total_wait: float = 0.0
    total_process: float = 0.0
    processing: dict[str, str] = field(default_factory=dict)


class GitOperationQueue:
    """Serialize mutating git operations per working directory plus one global bucket."""

    def __init__(
        self,
        *,
        max_queue_size: int = 100,
        operation_timeout: float = 300.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        settle_delay: float = 0.05,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._max_queue_size = max_queue_size
        self._operation_timeout = operation_timeout
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay
        self._settle_delay = settle_delay
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._buckets: dict[str, list[QueuedOperation]] = {}
        self._drainers: dict[str, asyncio.Task] = {}
        self._active_local = 0
        self._global_active = False
        self._changed = asyncio.Event()
        self._counters = _Counters()

    @classmethod
    def from_settings(cls, settings) -> "GitOperationQueue":
        return cls(
            max_queue_size=settings.queue_max_size,
            operation_timeout=settings.queue_operation_timeout,
            max_retries=settings.queue_max_retries,
            retry_delay=settings.queue_retry_delay,
            settle_delay=settings.queue_settle_delay,
        )

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())

    def pending(self, workdir: Path | str | None = None, *, is_global: bool = False) -> int:
        """Number of queued, not yet started, operations for one bucket."""

        key = GLOBAL_BUCKET if is_global else _bucket_key(workdir)
        return len(self._buckets.get(key, ()))

    async def enqueue(
        self,
        workdir: Path | str | None,
        operation: Callable[[], Awaitable[Any]],
        *,
        is_global: bool = False,
        priority: Priority = Priority.NORMAL,
        label: str | None = None,
    ) -> Any:
        """Queue ``operation`` and wait for its result.

        ``operation`` is a zero-argument callable returning an awaitable; it is
        invoked again for each retry.
        """

        if not is_global and workdir is None:
            raise ValueError("local operations require a working directory")

        key = GLOBAL_BUCKET if is_global else _bucket_key(workdir)
        bucket = self._buckets.setdefault(key, [])
        if len(bucket) >= self._max_queue_size:
            raise QueueFullError(
                f"queue for {key} is full ({self._max_queue_size} pending operations)"
            )

        op = QueuedOperation(
            id=uuid.uuid4().hex[:12],
            workdir=key,
            priority=Priority(priority),
            label=label or getattr(operation, "__name__", "operation"),
            is_global=is_global,
            operation=operation,
            future=asyncio.get_running_loop().create_future(),
            enqueued_at=self._clock(),
        )
        _insert_by_priority(bucket, op)
        logger.debug(
            "Queued git operation",
            extra={
                "operation_id": op.id,
                "label": op.label,
                "bucket": key,
                "priority": op.priority.name.lower(),
                "position": bucket.index(op),
            },
        )

        if key not in self._drainers:
            self._drainers[key] = asyncio.create_task(self._drain(key), name=f"git-queue:{key}")

        try:
            return await op.future
        except asyncio.CancelledError:
            if op in bucket:
                bucket.remove(op)
                self._notify()
            raise

    def clear(self) -> int:
        """Reject every pending operation with :class:`QueueClearedError`.

        Operations that are already executing are unaffected.
        """

        cleared = 0
        for key, bucket in self._buckets.items():
            for op in bucket:
                if not op.future.done():
                    op.future.set_exception(
                        QueueClearedError(f"operation {op.label} ({op.id}) cleared from {key}")
                    )
                    cleared += 1
            bucket.clear()
        self._notify()
        if cleared:
            logger.info("Cleared pending git operations", extra={"cleared": cleared})
        return cleared

    async def shutdown(self) -> int:
        """Clear pending work and wait for running operations to finish."""

        cleared = self.clear()
        drainers = list(self._drainers.values())
        if drainers:
            await asyncio.gather(*drainers, return_exceptions=True)
        return cleared

    def stats(self) -> dict[str, Any]:
        counters = self._counters
        finished = counters.total_processed + counters.total_failed
        return {
            "pending": len(self),
            "pending_global": self.pending(is_global=True),
            "processing": dict(counters.processing),
            "active_local": self._active_local,
            "global_active": self._global_active,
            "total_processed": counters.total_processed,
            "total_failed": counters.total_failed,
            "avg_wait": counters.total_wait / finished if finished else 0.0,
            "avg_process": counters.total_process / finished if finished else 0.0,
        }

    def _notify(self) -> None:
        self._changed.set()
        self._changed = asyncio.Event()

    async def _wait_until(self, predicate: Callable[[], bool]) -> None:
        while not predicate():
            await self._changed.wait()

    def _global_waiting(self) -> bool:
        return bool(self._buckets.get(GLOBAL_BUCKET))

    async def _acquire(self, is_global: bool) -> None:
        if is_global:
            await self._wait_until(lambda: not self._global_active and self._active_local == 0)
            self._global_active = True
        else:
            await self._wait_until(lambda: not self._global_active and not self._global_waiting())
            self._active_local += 1

    def _release(self, is_global: bool) -> None:
        if is_global:
            self._global_active = False
        else:
            self._active_local -= 1
        self._notify()

    async def _drain(self, key: str) -> None:
        is_global = key == GLOBAL_BUCKET
        try:
            while self._buckets.get(key):
                await self._acquire(is_global)
                bucket = self._buckets.get(key)
                if not bucket:
                    self._release(is_global)
                    break
                op = bucket.pop(0)
                self._counters.processing[key] = op.label
                try:
                    await self._execute(op)
                finally:
                    self._counters.processing.pop(key, None)
                    self._release(is_global)
                await self._sleep(self._settle_delay)
        finally:
            self._drainers.pop(key, None)
            if not is_global and key in self._buckets and not self._buckets[key]:
                del self._buckets[key]

    async def _execute(self, op: QueuedOperation) -> None:
        if op.future.done():
            return

        started = self._clock()
        self._counters.total_wait += started - op.enqueued_at
        logger.debug(
            "Starting git operation",
            extra={"operation_id": op.id, "label": op.label, "bucket": op.workdir},
        )

        attempt = 0
        while True:
            attempt += 1
            op.attempts = attempt
            try:
                result = await asyncio.wait_for(op.operation(), self._operation_timeout)
            except asyncio.TimeoutError:
                error: BaseException = GitTimeoutError(
                    f"operation {op.label} exceeded {self._operation_timeout}s",
                    workdir=op.workdir,
                    attempts=attempt,
                    elapsed=self._clock() - started,
                )
            except Exception as exc:
                error = exc
            else:
                elapsed = self._clock() - started
                self._counters.total_processed += 1
                self._counters.total_process += elapsed
                logger.debug(
                    "Completed git operation",
                    extra={
                        "operation_id": op.id,
                        "label": op.label,
                        "attempts": attempt,
                        "elapsed": round(elapsed, 3),
                    },
                )
                if not op.future.done():
                    op.future.set_result(result)
                return

            elapsed = self._clock() - started
            retryable = isinstance(error, GitError) and error.retryable
            if not retryable or attempt >= self._max_retries or op.future.done():
                self._counters.total_failed += 1
                self._counters.total_process += elapsed
                level = (
                    logging.ERROR
                    if getattr(error, "counts_toward_circuit", True)
                    else logging.INFO
                )
                logger.log(
                    level,
                    "Git operation failed",
                    extra={
                        "operation_id": op.id,
                        "label": op.label,
                        "bucket": op.workdir,
                        "attempts": attempt,
                        "elapsed": round(elapsed, 3),
                        "error_kind": type(error).__name__,
                        "error": str(error),
                    },
                )
                if not op.future.done():
                    op.future.set_exception(error)
                return

            logger.warning(
                "Retrying git operation",
                extra={
                    "operation_id": op.id,
                    "label": op.label,
                    "attempt": attempt,
                    "error_kind": type(error).__name__,
                },
            )
            await self._sleep(self._retry_delay * attempt)


def _bucket_key(workdir: Path | str | None) -> str:
    return os.path.abspath(str(workdir))


def _insert_by_priority(bucket: list[QueuedOperation], op: QueuedOperation) -> None:
    for index, existing in enumerate(bucket):
        if existing.priority > op.priority:
            bucket.insert(index, op)
            return
    bucket.append(op)


__all__ = ["GLOBAL_BUCKET", "GitOperationQueue", "Priority", "QueuedOperation"]
