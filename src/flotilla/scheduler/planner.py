"""Planning work through read-only executor calls.

Planner replies are free text. The structured payload is extracted best-effort
(fenced ``json`` block first, then the first balanced top-level brace span,
then the widest brace span) and anything that cannot be turned into
assignments degrades to deterministic defaults instead of failing the run.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Sequence

from pydantic import ValidationError

from ..events import EventBus
from ..executor import TaskResult
from ..profiles import RoleProfile
from ..ratelimit import FailoverPolicy
from ..sessions import Session, SessionRegistry
from .models import DEFAULT_ACCEPTANCE, DEFAULT_FILES, DEFAULT_TASKS, Assignment, PlanResult
from .prompts import build_plan_prompt, build_reassign_prompt

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)\n?```", re.DOTALL)
_ASSIGNMENT_KEYS = {"area", "tasks", "files", "title", "description", "acceptance"}


def first_balanced_object(text: str) -> str | None:
    """Return the first top-level ``{...}`` span, honouring JSON strings."""

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def extract_payload(text: str | None) -> Any | None:
    """Best-effort extraction of a JSON object or list from free text."""

    if not text:
        return None

    candidates = [match.group(1).strip() for match in _FENCE_RE.finditer(text)]
    balanced = first_balanced_object(text)
    if balanced:
        candidates.append(balanced)
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        candidates.append(text[first : last + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, (dict, list)):
            return payload
    return None


def fallback_assignments(worker_ids: Sequence[str]) -> list[Assignment]:
    """One deterministic default assignment per worker."""

    return [
        Assignment(
            worker_id=worker_id,
            area=f"Section {index} from PROJECT_DIRECTION.md",
            files=DEFAULT_FILES,
            tasks=("Read PROJECT_DIRECTION.md", "Implement assigned section", "Run tests"),
            acceptance="Tests pass and code compiles",
        )
        for index, worker_id in enumerate(worker_ids, start=1)
    ]


def _raw_items(payload: Any, worker_ids: Sequence[str]) -> list[tuple[str | None, Any]]:
    if isinstance(payload, list):
        return [(None, item) for item in payload]
    if not isinstance(payload, dict):
        return []
    if isinstance(payload.get("assignments"), list):
        return [(None, item) for item in payload["assignments"]]
    keyed = [(key, value) for key, value in payload.items() if isinstance(value, dict)]
    if keyed and all(key in worker_ids for key, _ in keyed):
        return keyed
    if _ASSIGNMENT_KEYS & payload.keys():
        return [(None, payload)]
    return []


def _normalize(raw: Any, worker_id: str, index: int) -> Assignment | None:
    if not isinstance(raw, dict):
        return None
    area = raw.get("area") or raw.get("title") or raw.get("description") or f"Area {index}"
    files = raw.get("files") if isinstance(raw.get("files"), list) else list(DEFAULT_FILES)
    tasks = raw.get("tasks") if isinstance(raw.get("tasks"), list) else list(DEFAULT_TASKS)
    try:
        return Assignment(
            worker_id=worker_id,
            area=str(area),
            files=files or list(DEFAULT_FILES),
            tasks=tasks or list(DEFAULT_TASKS),
            acceptance=str(raw.get("acceptance") or DEFAULT_ACCEPTANCE),
        )
    except ValidationError:
        return None


def parse_plan(text: str | None, worker_ids: Sequence[str]) -> PlanResult:
    """Turn planner output into at most one assignment per worker.

    Entries naming unknown workers go to workers left without an assignment,
    in order; surplus entries are dropped. Unusable output yields
    :func:`fallback_assignments`.
    """

    payload = extract_payload(text)
    if isinstance(payload, dict) and str(payload.get("status", "")).lower() == "complete":
        return PlanResult(complete=True, reason=payload.get("reason"))

    items = _raw_items(payload, worker_ids) if payload is not None else []
    assigned: dict[str, Assignment] = {}
    unplaced: list[tuple[int, Any]] = []
    for index, (key, raw) in enumerate(items, start=1):
        named = key or (raw.get("worker") or raw.get("worker_id") if isinstance(raw, dict) else None)
        if named in worker_ids and named not in assigned:
            assignment = _normalize(raw, named, index)
            if assignment is not None:
                assigned[named] = assignment
                continue
        unplaced.append((index, raw))

    free = [worker_id for worker_id in worker_ids if worker_id not in assigned]
    for index, raw in unplaced:
        if not free:
            logger.warning("Dropping surplus planner assignment", extra={"index": index})
            continue
        assignment = _normalize(raw, free[0], index)
        if assignment is not None:
            assigned[free.pop(0)] = assignment

    if not assigned:
        return PlanResult(assignments=fallback_assignments(worker_ids), fallback=True)
    return PlanResult(assignments=[assigned[w] for w in worker_ids if w in assigned])


class Planner:
    """Ask lead sessions for assignments, one request per lead at a time."""

    def __init__(
        self,
        registry: SessionRegistry,
        profiles: dict[str, RoleProfile],
        failover: FailoverPolicy,
        *,
        events: EventBus | None = None,
        model: str | None = None,
        max_rate_limit_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._registry = registry
        self._profiles = profiles
        self._failover = failover
        self._events = events
        self._model = model
        self._max_rate_limit_retries = max_rate_limit_retries
        self._sleep = sleep or asyncio.sleep
        self._locks: dict[str, asyncio.Lock] = {}

    async def plan(
        self,
        lead: Session,
        worker_ids: Sequence[str],
        *,
        goal: str,
        role: str = "lead",
        context: Sequence[str] | None = None,
    ) -> PlanResult:
        """Partition ``goal`` into one assignment per worker id."""

        profile = self._profiles[role]
        prompt = build_plan_prompt(profile, goal, worker_ids, context=context)
        result = await self._ask(lead, profile, prompt)
        if result is None or not result.success:
            logger.warning(
                "Planner call failed; using fallback assignments",
                extra={"session_id": lead.id, "error": result.error if result else "rate limited"},
            )
            plan = PlanResult(assignments=fallback_assignments(worker_ids), fallback=True)
        else:
            plan = parse_plan(result.output, worker_ids)
        self._report(lead, plan, result)
        return plan

    async def reassign(
        self,
        lead: Session,
        worker_id: str,
        *,
        goal: str,
        completed: Assignment,
        role: str = "lead",
        context: Sequence[str] | None = None,
    ) -> PlanResult:
        """Ask for the next assignment of one worker that just finished."""

        profile = self._profiles[role]
        prompt = build_reassign_prompt(profile, goal, worker_id, completed, context=context)
        result = await self._ask(lead, profile, prompt)
        if result is None or not result.success:
            plan = PlanResult(assignments=fallback_assignments([worker_id]), fallback=True)
        else:
            plan = parse_plan(result.output, [worker_id])
        self._report(lead, plan, result)
        return plan

    async def _ask(self, lead: Session, profile: RoleProfile, prompt: str) -> TaskResult | None:
        lock = self._locks.setdefault(lead.id, asyncio.Lock())
        async with lock:
            for _ in range(self._max_rate_limit_retries + 1):
                result = await self._registry.execute(
                    lead,
                    prompt,
                    permissions=profile.effective_permissions,
                    model=profile.model or self._model,
                )
                if not result.rate_limited:
                    return result
                decision = self._failover.handle(lead)
                if decision.delay:
                    await self._sleep(decision.delay)
            return None

    def _report(self, lead: Session, plan: PlanResult, result: TaskResult | None) -> None:
        if plan.complete:
            logger.info("Planner reports no remaining work", extra={"session_id": lead.id, "reason": plan.reason})
            event_type = "plan:complete"
        elif plan.fallback:
            logger.warning(
                "Planner output unusable; synthesized default assignments",
                extra={
                    "session_id": lead.id,
                    "output_excerpt": (result.output if result else "")[:500],
                },
            )
            event_type = "plan:fallback"
        else:
            logger.info(
                "Planner assignments received",
                extra={"session_id": lead.id, "assignments": len(plan.assignments)},
            )
            event_type = "plan:received"
        if self._events is not None:
            self._events.publish(
                event_type,
                session_id=lead.id,
                assignments=[assignment.model_dump() for assignment in plan.assignments],
                reason=plan.reason,
            )


__all__ = ["Planner", "extract_payload", "fallback_assignments", "first_balanced_object", "parse_plan"]
