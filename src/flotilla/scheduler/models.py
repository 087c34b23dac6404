"""Scheduler data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..executor import TaskResult
from ..sessions import Session

DEFAULT_FILES = ("src/",)
DEFAULT_TASKS = ("Implement assigned features",)
DEFAULT_ACCEPTANCE = "Tests pass"


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class SchedulerStateError(RuntimeError):
    """Raised for invalid scheduler state transitions."""


class Assignment(BaseModel):
    """One unit of declared work for one worker (or one cluster goal)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    worker_id: str = Field(validation_alias=AliasChoices("worker_id", "worker", "target", "team"))
    area: str
    files: tuple[str, ...] = DEFAULT_FILES
    tasks: tuple[str, ...] = DEFAULT_TASKS
    acceptance: str = DEFAULT_ACCEPTANCE

    @field_validator("files", "tasks", mode="before")
    @classmethod
    def _coerce_sequence(cls, value: Any):
        if value is None:
            return ()
        if isinstance(value, str):
            return (value,)
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value if str(item).strip())
        raise TypeError("files and tasks must be lists of strings")

    def describe(self) -> str:
        lines = [f"Area: {self.area}"]
        if self.files:
            lines.append("Files: " + ", ".join(self.files))
        if self.tasks:
            lines.append("Tasks:\n" + "\n".join(f"- {task}" for task in self.tasks))
        lines.append(f"Acceptance: {self.acceptance}")
        return "\n".join(lines)


@dataclass(slots=True)
class PlanResult:
    assignments: list[Assignment] = field(default_factory=list)
    complete: bool = False
    reason: str | None = None
    fallback: bool = False


class WorkerStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class WorkerOutcome:
    session_id: str
    assignment: Assignment
    status: WorkerStatus
    result: TaskResult | None = None
    error: str | None = None


@dataclass(slots=True)
class Team:
    """A lead plus the workers whose branches merge into one integration point."""

    id: str
    lead: Session
    workers: list[Session]
    integration_branch: str
    integration_path: Path
    merge_is_global: bool
    planner_role: str
    exhausted: bool = False


@dataclass(slots=True)
class Cluster:
    """Feature-branch-scoped sub-team in the hierarchical topology."""

    id: str
    lead: Session
    feature_branch: str
    members: list[Session]
    team: Team
    exhausted: bool = False
    failures: int = 0


__all__ = [
    "Assignment",
    "Cluster",
    "DEFAULT_ACCEPTANCE",
    "DEFAULT_FILES",
    "DEFAULT_TASKS",
    "PlanResult",
    "SchedulerState",
    "SchedulerStateError",
    "Team",
    "WorkerOutcome",
    "WorkerStatus",
]
