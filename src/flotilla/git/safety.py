"""Robust execution of single git commands.

Every git subprocess issued by Flotilla goes through :class:`GitSafety`. It
clears stale ``*.lock`` files left behind by crashed processes, classifies
failures, retries transient ones with jittered exponential backoff and keeps a
run-wide failure counter that trips a circuit breaker once it reaches its
ceiling.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Sequence

from ..executor.utils import sanitize_environment
from .errors import (
    CircuitOpenError,
    ConflictError,
    GitError,
    GitTimeoutError,
    TransientLockError,
    classify_failure,
)

logger = logging.getLogger(__name__)

_GIT_ENV = {"GIT_PAGER": "cat", "GIT_TERMINAL_PROMPT": "0"}


@dataclass(slots=True)
class GitResult:
    """Holds the outcome of a git invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def resolve_git_dirs(workdir: Path) -> list[Path]:
    """Return the metadata directories backing ``workdir``.

    For a linked worktree ``.git`` is a file pointing at a private git dir,
    which in turn names the shared common dir.
    """

    dot_git = workdir / ".git"
    if dot_git.is_dir():
        return [dot_git]
    if not dot_git.is_file():
        return []

    content = dot_git.read_text(encoding="utf-8").strip()
    if not content.startswith("gitdir:"):
        return []
    private = Path(content.split(":", 1)[1].strip())
    if not private.is_absolute():
        private = (workdir / private).resolve()
    dirs = [private]

    commondir_file = private / "commondir"
    if commondir_file.is_file():
        common = Path(commondir_file.read_text(encoding="utf-8").strip())
        if not common.is_absolute():
            common = (private / common).resolve()
        dirs.append(common)
    return dirs


class GitSafety:
    """Execute git commands with lock cleanup, retries and a circuit breaker."""

    def __init__(
        self,
        *,
        git_binary: str = "git",
        timeout: float = 240.0,
        stale_lock_seconds: float = 120.0,
        max_lock_scan_depth: int = 4,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        jitter: float = 0.5,
        failure_ceiling: int = 50,
        success_decay: int = 2,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        rng: Callable[[], float] | None = None,
        clock: Callable[[], float] | None = None,
        wall_clock: Callable[[], float] | None = None,
    ) -> None:
        self._git = git_binary
        self._timeout = timeout
        self._stale_lock_seconds = stale_lock_seconds
        self._max_depth = max_lock_scan_depth
        self._max_retries = max_retries
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._jitter = jitter
        self._failure_ceiling = failure_ceiling
        self._success_decay = success_decay
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.random
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or time.time
        self._failure_count = 0
        self._locks_removed = 0

    @classmethod
    def from_settings(cls, settings) -> "GitSafety":
        return cls(
            timeout=settings.git_timeout,
            stale_lock_seconds=settings.stale_lock_seconds,
            max_lock_scan_depth=settings.max_lock_scan_depth,
            max_retries=settings.git_max_retries,
            backoff_base=settings.git_backoff_base,
            backoff_max=settings.git_backoff_max,
            jitter=settings.git_backoff_jitter,
            failure_ceiling=settings.failure_ceiling,
            success_decay=settings.failure_decay,
        )

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def failure_ceiling(self) -> int:
        return self._failure_ceiling

    @property
    def circuit_open(self) -> bool:
        return self._failure_count >= self._failure_ceiling

    def stats(self) -> dict[str, int | bool]:
        return {
            "failure_count": self._failure_count,
            "failure_ceiling": self._failure_ceiling,
            "circuit_open": self.circuit_open,
            "locks_removed": self._locks_removed,
        }

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (zero based)."""

        base = min(self._backoff_base * (2**attempt), self._backoff_max)
        return base + self._rng() * self._jitter

    async def run(
        self,
        workdir: Path | str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Run ``git <args>`` in ``workdir`` and return its stdout."""

        result = await self.execute(workdir, args, timeout=timeout, env=env)
        return result.stdout

    async def execute(
        self,
        workdir: Path | str,
        args: Sequence[str],
        *,
        check: bool = True,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> GitResult:
        """Run a git command, retrying transient failures.

        With ``check=False`` a non-retryable non-zero exit is returned to the
        caller instead of raised, and is not counted as a failure.
        """

        workdir = Path(workdir)
        args = tuple(args)
        started = self._clock()
        self._ensure_circuit_closed(workdir, args)

        await self.clear_stale_locks(workdir)
        locks_cleared_after_failure = False
        attempt = 0

        while True:
            self._ensure_circuit_closed(workdir, args)
            attempt += 1
            try:
                result = await self._spawn(workdir, args, timeout or self._timeout, env)
            except GitTimeoutError as exc:
                error: GitError = exc
            else:
                if result.ok:
                    self._record_success()
                    return result
                error_cls = classify_failure(f"{result.stderr}\n{result.stdout}")
                if not check and not error_cls.retryable:
                    return result
                error = error_cls(
                    f"git {' '.join(args)} failed with exit code {result.returncode}: "
                    f"{result.stderr.strip() or result.stdout.strip()}",
                    args=args,
                    workdir=str(workdir),
                    returncode=result.returncode,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )

            error.attempts = attempt
            error.elapsed = self._clock() - started
            if error.counts_toward_circuit:
                self._failure_count += 1

            if not error.retryable or attempt > self._max_retries:
                if isinstance(error, ConflictError):
                    await self._log_conflict(error)
                else:
                    self._log_failure(error)
                raise error

            if isinstance(error, TransientLockError) and not locks_cleared_after_failure:
                locks_cleared_after_failure = True
                await self.clear_stale_locks(workdir)

            delay = self.backoff_delay(attempt - 1)
            logger.warning(
                "Retrying git command after transient failure",
                extra={
                    "git_args": list(args),
                    "workdir": str(workdir),
                    "error_kind": type(error).__name__,
                    "attempt": attempt,
                    "delay": round(delay, 3),
                    "failure_count": self._failure_count,
                },
            )
            await self._sleep(delay)

    async def clear_stale_locks(self, workdir: Path | str) -> list[Path]:
        """Remove ``*.lock`` files older than the staleness threshold."""

        removed = await asyncio.to_thread(self._scan_and_remove, Path(workdir))
        self._locks_removed += len(removed)
        for path in removed:
            logger.warning("Removed stale git lock", extra={"lock_path": str(path)})
        return removed

    def _scan_and_remove(self, workdir: Path) -> list[Path]:
        roots: list[Path] = []
        for candidate in resolve_git_dirs(workdir):
            if candidate.is_dir() and candidate not in roots:
                roots.append(candidate)

        now = self._wall_clock()
        removed: list[Path] = []
        seen: set[Path] = set()
        queue: deque[tuple[Path, int]] = deque((root, 0) for root in roots)
        while queue:
            directory, depth = queue.popleft()
            if directory in seen:
                continue
            seen.add(directory)
            try:
                entries = list(directory.iterdir())
            except OSError:
                continue
            for entry in entries:
                if entry.is_dir():
                    if entry.name != "objects" and depth < self._max_depth:
                        queue.append((entry, depth + 1))
                    continue
                if not entry.name.endswith(".lock"):
                    continue
                try:
                    age = now - entry.stat().st_mtime
                except FileNotFoundError:
                    continue
                if age > self._stale_lock_seconds:
                    entry.unlink(missing_ok=True)
                    removed.append(entry)
        return removed

    async def _spawn(
        self,
        workdir: Path,
        args: tuple[str, ...],
        timeout: float,
        env: Mapping[str, str] | None,
    ) -> GitResult:
        cmd = [self._git, *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(workdir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=sanitize_environment({**_GIT_ENV, **(env or {})}),
        )
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError as exc:
            await _terminate(process)
            raise GitTimeoutError(
                f"git {' '.join(args)} timed out after {timeout}s",
                args=args,
                workdir=str(workdir),
            ) from exc
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        return GitResult(
            args=tuple(cmd),
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )

    def _ensure_circuit_closed(self, workdir: Path, args: tuple[str, ...]) -> None:
        if self.circuit_open:
            raise CircuitOpenError(
                f"git circuit breaker open after {self._failure_count} failures",
                args=args,
                workdir=str(workdir),
                attempts=0,
            )

    def _record_success(self) -> None:
        if self._failure_count:
            self._failure_count = max(0, self._failure_count - self._success_decay)

    def _log_failure(self, error: GitError) -> None:
        extra = {
            "git_args": list(error.command),
            "workdir": error.workdir,
            "error_kind": type(error).__name__,
            "attempts": error.attempts,
            "elapsed": round(error.elapsed, 3),
            "failure_count": self._failure_count,
        }
        logger.error("Git command failed", extra=extra)

    async def _log_conflict(self, error: GitError) -> None:
        workdir = Path(error.workdir or ".")
        try:
            status = await self._spawn(workdir, ("status", "--porcelain"), self._timeout, None)
        except GitTimeoutError as exc:
            logger.warning("Could not list uncommitted files", extra={"workdir": str(workdir), "error": str(exc)})
            files: list[str] = []
        else:
            files = [line[3:] for line in status.stdout.splitlines() if line.strip()] if status.ok else []
        logger.warning(
            "Git command blocked by conflicts or uncommitted changes",
            extra={
                "git_args": list(error.command),
                "workdir": str(workdir),
                "attempts": error.attempts,
                "elapsed": round(error.elapsed, 3),
                "uncommitted_files": files[:20],
                "uncommitted_total": len(files),
            },
        )


async def _terminate(process: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        process.kill()
    await process.wait()


__all__ = ["GitResult", "GitSafety", "resolve_git_dirs"]
