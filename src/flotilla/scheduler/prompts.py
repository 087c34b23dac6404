"""Prompt construction for planners and workers."""

from __future__ import annotations

import json
from typing import Iterable, Sequence

from ..profiles import RoleProfile
from .models import Assignment

_PLAN_FORMAT = {
    "assignments": [
        {
            "worker": "worker-1",
            "area": "Short name of the area",
            "files": ["src/module/"],
            "tasks": ["Concrete step", "Another step"],
            "acceptance": "How to tell the work is done",
        }
    ]
}


def _sections(profile: RoleProfile, *parts: str) -> str:
    sections = [profile.system_prompt.strip(), *[part for part in parts if part]]
    if profile.constraints:
        sections.append(
            "Constraints:\n" + "\n".join(f"- {constraint}" for constraint in profile.constraints)
        )
    return "\n\n".join(sections)


def _context_block(context: Sequence[str] | None) -> str:
    if not context:
        return ""
    return "Recently merged work:\n" + "\n".join(f"- {line}" for line in context)


def build_plan_prompt(
    profile: RoleProfile,
    goal: str,
    worker_ids: Iterable[str],
    *,
    context: Sequence[str] | None = None,
) -> str:
    ids = list(worker_ids)
    return _sections(
        profile,
        "Goal:\n" + goal.strip(),
        _context_block(context),
        "Workers:\n" + "\n".join(f"- {worker_id}" for worker_id in ids),
        (
            f"Return exactly one assignment per worker ({len(ids)} in total) as JSON in a "
            "```json fenced block using this shape:\n" + json.dumps(_PLAN_FORMAT, indent=2)
            + '\nIf no meaningful work remains, return {"status": "complete", "reason": "..."}.'
        ),
    )


def build_reassign_prompt(
    profile: RoleProfile,
    goal: str,
    worker_id: str,
    completed: Assignment,
    *,
    context: Sequence[str] | None = None,
) -> str:
    return _sections(
        profile,
        "Goal:\n" + goal.strip(),
        _context_block(context),
        f"{worker_id} just finished and its work has been merged:\n{completed.describe()}",
        (
            f"Give {worker_id} its next assignment as a single JSON object in a ```json fenced "
            "block with the keys worker, area, files, tasks and acceptance. Avoid areas other "
            'workers are still busy with. If nothing meaningful remains, return {"status": "complete"}.'
        ),
    )


def build_worker_prompt(profile: RoleProfile, assignment: Assignment, *, goal: str | None = None) -> str:
    return _sections(
        profile,
        "Overall goal:\n" + goal.strip() if goal else "",
        "Assignment:\n" + assignment.describe(),
        "Commit or leave your changes in the working tree when you are done; they are merged automatically.",
    )


__all__ = ["build_plan_prompt", "build_reassign_prompt", "build_worker_prompt"]
