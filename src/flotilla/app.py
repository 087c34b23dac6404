"""Wire settings into a ready-to-run scheduler."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .config import FlotillaSettings
from .events import EventBus
from .executor import CodexExecutor, TaskExecutor
from .git import BranchMerger, GitOperationQueue, GitSafety, WorktreeManager
from .profiles import RoleProfile, load_profiles
from .ratelimit import CredentialPool, FailoverPolicy, RateLimitDetector
from .scheduler import Planner, Scheduler
from .sessions import IntegrationStats, SessionRegistry, StateStore
from .storage import ChromaStore, ChromaUnavailableError, EventJournal

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: FlotillaSettings
    events: EventBus
    git: GitSafety
    queue: GitOperationQueue
    registry: SessionRegistry
    scheduler: Scheduler
    profiles: dict[str, RoleProfile]
    journal: EventJournal | None = None


def _build_journal(settings: FlotillaSettings, events: EventBus, run_id: str) -> EventJournal | None:
    store = ChromaStore(settings.chroma_persist_path)
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        logger.warning("Event journal disabled", extra={"error": str(exc)})
        return None
    journal = EventJournal(store, run_id)
    events.subscribe(journal)
    logger.info("Event journal enabled", extra={"path": str(settings.chroma_persist_path)})
    return journal


def build_runtime(
    settings: FlotillaSettings,
    *,
    executor: TaskExecutor | None = None,
    git: GitSafety | None = None,
    queue: GitOperationQueue | None = None,
    pool: CredentialPool | None = None,
    profiles: dict[str, RoleProfile] | None = None,
    run_id: str | None = None,
    clock: Callable[[], float] | None = None,
) -> Runtime:
    """Construct every component for one run.

    ``executor`` defaults to the Codex CLI; tests pass a scripted executor
    instead. ``clock`` drives the scheduler's run budget.
    """

    run_id = run_id or uuid.uuid4().hex[:12]
    events = EventBus()
    stats = IntegrationStats()
    detector = RateLimitDetector(settings.rate_limit_patterns)
    if executor is None:
        executor = CodexExecutor(
            Path(settings.codex_path) if settings.codex_path else None,
            default_model=settings.codex_default_model,
            rate_limit_detector=detector,
        )

    git = git or GitSafety.from_settings(settings)
    queue = queue or GitOperationQueue.from_settings(settings)
    pool = pool or CredentialPool.from_settings(settings)
    profiles = profiles or load_profiles(settings.profile_paths)

    registry = SessionRegistry(
        executor,
        pool,
        detector=detector,
        events=events,
        scan_interval=settings.rate_limit_scan_interval,
    )
    failover = FailoverPolicy(
        pool,
        stats,
        exhausted_retry_delay=settings.exhausted_retry_delay,
        exhausted_retry_cap=settings.exhausted_retry_cap,
        events=events,
    )
    worktrees = WorktreeManager(
        git, queue, repo_path=settings.repo_path, workspace_dir=settings.workspace_dir
    )
    merger = BranchMerger(git, queue, remote=settings.remote, push_enabled=settings.push_enabled)
    planner = Planner(registry, profiles, failover, events=events, model=settings.planner_model)

    journal = _build_journal(settings, events, run_id) if settings.journal_enabled else None

    scheduler = Scheduler(
        settings,
        registry=registry,
        planner=planner,
        worktrees=worktrees,
        merger=merger,
        queue=queue,
        git=git,
        failover=failover,
        store=StateStore(settings.state_path),
        stats=stats,
        profiles=profiles,
        events=events,
        clock=clock,
        run_id=run_id,
    )
    return Runtime(
        settings=settings,
        events=events,
        git=git,
        queue=queue,
        registry=registry,
        scheduler=scheduler,
        profiles=profiles,
        journal=journal,
    )


__all__ = ["Runtime", "build_runtime"]
