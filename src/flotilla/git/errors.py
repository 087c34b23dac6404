"""Error taxonomy for repository operations."""

from __future__ import annotations

from typing import Sequence

_LOCK_MARKERS = (
    "index.lock",
    "another git process",
    "unable to create",
    "file exists",
    "could not write index",
    "cannot lock ref",
)
_TIMEOUT_MARKERS = ("timed out", "timeout")
_CONFLICT_MARKERS = (
    "conflict",
    "would be overwritten",
    "unmerged files",
    "unresolved conflict",
    "not possible because you have unmerged",
)
_NETWORK_MARKERS = (
    "connection reset",
    "connection refused",
    "unable to access",
    "could not read from remote",
    "the remote end hung up",
)


class GitError(RuntimeError):
    """Base class for classified git failures."""

    retryable = False
    counts_toward_circuit = True

    def __init__(
        self,
        message: str,
        *,
        args: Sequence[str] = (),
        workdir: str | None = None,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        attempts: int = 1,
        elapsed: float = 0.0,
    ) -> None:
        super().__init__(message)
        self.command = tuple(args)
        self.workdir = workdir
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.attempts = attempts
        self.elapsed = elapsed

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stderr, self.stdout) if part)


class TransientLockError(GitError):
    """A lock file or concurrent git process blocked the command."""

    retryable = True


class GitTimeoutError(GitError):
    """The git subprocess exceeded its allotted time."""

    retryable = True


class TransientNetworkError(GitError):
    """The remote could not be reached."""

    retryable = True


class ConflictError(GitError):
    """Content conflict; needs resolution rather than a retry."""

    counts_toward_circuit = False


class GitCommandError(GitError):
    """Any other non-zero git exit."""


class CircuitOpenError(GitError):
    """Raised when the run-wide failure ceiling has been reached."""

    counts_toward_circuit = False


class QueueFullError(RuntimeError):
    """Raised when a queue bucket is at capacity."""


class QueueClearedError(RuntimeError):
    """Raised for pending operations discarded by ``GitOperationQueue.clear``."""


def classify_failure(text: str) -> type[GitError]:
    """Map git output to the error class describing it."""

    lowered = text.lower()
    if any(marker in lowered for marker in _LOCK_MARKERS):
        return TransientLockError
    if any(marker in lowered for marker in _CONFLICT_MARKERS):
        return ConflictError
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return GitTimeoutError
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return TransientNetworkError
    return GitCommandError


def is_retryable(exc: BaseException) -> bool:
    """Whether the operation queue may retry after ``exc``."""

    if isinstance(exc, GitError):
        return exc.retryable
    return False


__all__ = [
    "CircuitOpenError",
    "ConflictError",
    "GitCommandError",
    "GitError",
    "GitTimeoutError",
    "QueueClearedError",
    "QueueFullError",
    "TransientLockError",
    "TransientNetworkError",
    "classify_failure",
    "is_retryable",
]
