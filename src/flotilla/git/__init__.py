"""Serialized, fault-tolerant access to the shared git repository."""

from .errors import (
    CircuitOpenError,
    ConflictError,
    GitCommandError,
    GitError,
    GitTimeoutError,
    QueueClearedError,
    QueueFullError,
    TransientLockError,
    TransientNetworkError,
    classify_failure,
)
from .merge import BranchMerger, MergeOutcome, SyncOutcome
from .queue import GitOperationQueue, Priority, QueuedOperation
from .repository import RepositoryError, ensure_repository
from .safety import GitResult, GitSafety
from .worktree import WorktreeManager

__all__ = [
    "BranchMerger",
    "CircuitOpenError",
    "ConflictError",
    "GitCommandError",
    "GitError",
    "GitOperationQueue",
    "GitResult",
    "GitSafety",
    "GitTimeoutError",
    "MergeOutcome",
    "Priority",
    "QueueClearedError",
    "QueueFullError",
    "QueuedOperation",
    "RepositoryError",
    "SyncOutcome",
    "TransientLockError",
    "TransientNetworkError",
    "WorktreeManager",
    "classify_failure",
    "ensure_repository",
]
