"""Planning, dispatch and integration of worker assignments."""

from .loop import DEFAULT_DIRECTION, Scheduler
from .models import (
    Assignment,
    Cluster,
    PlanResult,
    SchedulerState,
    SchedulerStateError,
    Team,
    WorkerOutcome,
    WorkerStatus,
)
from .planner import Planner, extract_payload, fallback_assignments, parse_plan

__all__ = [
    "Assignment",
    "Cluster",
    "DEFAULT_DIRECTION",
    "PlanResult",
    "Planner",
    "Scheduler",
    "SchedulerState",
    "SchedulerStateError",
    "Team",
    "WorkerOutcome",
    "WorkerStatus",
    "extract_payload",
    "fallback_assignments",
    "parse_plan",
]
