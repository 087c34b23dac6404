"""Session, statistics and persisted-state models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

STATE_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def estimate_tokens(text: str | None) -> int:
    """Rough token count at four characters per token."""

    return len(text or "") // 4


class SessionRole(str, Enum):
    LEAD = "lead"
    DIRECTOR = "director"
    CLUSTER_LEAD = "cluster_lead"
    WORKER = "worker"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING = "waiting"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(slots=True)
class SessionMetrics:
    tasks_completed: int = 0
    tasks_failed: int = 0
    rate_limited: int = 0
    invocations: int = 0
    progress_events: int = 0
    tool_calls: int = 0
    estimated_tokens: int = 0
    total_duration_ms: int = 0
    last_error: str | None = None


@dataclass(slots=True)
class Session:
    """One executor context bound to a worktree and branch."""

    id: str
    role: SessionRole
    worktree_path: Path
    branch_name: str
    status: SessionStatus = SessionStatus.IDLE
    resumable_handle: str | None = None
    credential_index: int = 0
    cluster_id: str | None = None
    metrics: SessionMetrics = field(default_factory=SessionMetrics)
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime | None = None

    @property
    def available(self) -> bool:
        return self.status in {SessionStatus.IDLE, SessionStatus.FAILED}


class IntegrationStats(BaseModel):
    """Run-wide counters, mutated by the scheduler and failover policy."""

    commits: int = 0
    merges: int = 0
    conflicts: int = 0
    pushes: int = 0
    push_failures: int = 0
    merge_failures: int = 0
    rate_limits: int = 0
    worker_failures: int = 0
    feature_merges: int = 0


class PersistedMetrics(BaseModel):
    tasks_completed: int = 0
    tasks_failed: int = 0
    rate_limited: int = 0
    invocations: int = 0
    progress_events: int = 0
    tool_calls: int = 0
    estimated_tokens: int = 0
    total_duration_ms: int = 0
    last_error: str | None = None


class PersistedSession(BaseModel):
    id: str
    role: SessionRole
    status: SessionStatus
    worktree_path: str
    branch_name: str
    resumable_handle: str | None = None
    credential_index: int = 0
    cluster_id: str | None = None
    metrics: PersistedMetrics = Field(default_factory=PersistedMetrics)
    created_at: datetime
    last_active_at: datetime | None = None

    @classmethod
    def from_session(cls, session: Session) -> "PersistedSession":
        metrics = session.metrics
        return cls(
            id=session.id,
            role=session.role,
            status=session.status,
            worktree_path=str(session.worktree_path),
            branch_name=session.branch_name,
            resumable_handle=session.resumable_handle,
            credential_index=session.credential_index,
            cluster_id=session.cluster_id,
            metrics=PersistedMetrics(
                tasks_completed=metrics.tasks_completed,
                tasks_failed=metrics.tasks_failed,
                rate_limited=metrics.rate_limited,
                invocations=metrics.invocations,
                progress_events=metrics.progress_events,
                tool_calls=metrics.tool_calls,
                estimated_tokens=metrics.estimated_tokens,
                total_duration_ms=metrics.total_duration_ms,
                last_error=metrics.last_error,
            ),
            created_at=session.created_at,
            last_active_at=session.last_active_at,
        )

    def to_session(self) -> Session:
        status = self.status
        if status in {SessionStatus.RUNNING, SessionStatus.WAITING}:
            status = SessionStatus.IDLE
        return Session(
            id=self.id,
            role=self.role,
            worktree_path=Path(self.worktree_path),
            branch_name=self.branch_name,
            status=status,
            resumable_handle=self.resumable_handle,
            credential_index=self.credential_index,
            cluster_id=self.cluster_id,
            metrics=SessionMetrics(**self.metrics.model_dump()),
            created_at=self.created_at,
            last_active_at=self.last_active_at,
        )


class PersistedState(BaseModel):
    """Versioned snapshot written periodically and at shutdown."""

    version: Literal[1] = STATE_VERSION
    run_id: str
    topology: str
    iteration: int = 0
    started_at: datetime | None = None
    saved_at: datetime = Field(default_factory=utcnow)
    sessions: list[PersistedSession] = Field(default_factory=list)
    stats: IntegrationStats = Field(default_factory=IntegrationStats)


__all__ = [
    "IntegrationStats",
    "PersistedMetrics",
    "PersistedSession",
    "PersistedState",
    "STATE_VERSION",
    "Session",
    "SessionMetrics",
    "SessionRole",
    "SessionStatus",
    "estimate_tokens",
    "utcnow",
]
