"""The top-level scheduling loop.

Each iteration asks a lead for one assignment per idle worker, starts every
assignment at once and then reaps workers as they finish: a successful worker
is merged into its team's integration point straight away and handed its next
assignment without waiting for its siblings. Throttled workers are retried
with the same assignment on a rotated credential. In the hierarchical topology
a director hands one goal to each cluster, clusters run the same loop against
their feature branch in parallel, and feature branches are merged into the
integration branch one at a time once every cluster has finished its pass.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import time
import uuid
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from ..config import FlotillaSettings
from ..events import EventBus
from ..git import (
    BranchMerger,
    CircuitOpenError,
    GitError,
    GitOperationQueue,
    GitSafety,
    QueueClearedError,
    QueueFullError,
    WorktreeManager,
    ensure_repository,
)
from ..profiles import RoleProfile
from ..ratelimit import FailoverPolicy
from ..sessions import (
    IntegrationStats,
    PersistedState,
    Session,
    SessionBusyError,
    SessionRegistry,
    SessionRole,
    SessionStatus,
    StateStore,
    StateStoreError,
)
from ..sessions.models import utcnow
from .models import (
    Assignment,
    Cluster,
    SchedulerState,
    SchedulerStateError,
    Team,
    WorkerOutcome,
    WorkerStatus,
)
from .planner import Planner
from .prompts import build_worker_prompt

logger = logging.getLogger(__name__)

_RECOVERABLE = (GitError, QueueClearedError, QueueFullError)
DEFAULT_DIRECTION = (
    "Improve the project: fix failing tests, complete unfinished features and "
    "tighten error handling."
)


class Scheduler:
    """Drive planning, dispatch, merging and reassignment until the run ends."""

    def __init__(
        self,
        settings: FlotillaSettings,
        *,
        registry: SessionRegistry,
        planner: Planner,
        worktrees: WorktreeManager,
        merger: BranchMerger,
        queue: GitOperationQueue,
        git: GitSafety,
        failover: FailoverPolicy,
        store: StateStore,
        stats: IntegrationStats,
        profiles: dict[str, RoleProfile],
        events: EventBus | None = None,
        clock: Callable[[], float] | None = None,
        run_id: str | None = None,
    ) -> None:
        self._settings = settings
        self._registry = registry
        self._planner = planner
        self._worktrees = worktrees
        self._merger = merger
        self._queue = queue
        self._git = git
        self._failover = failover
        self._store = store
        self._profiles = profiles
        self._events = events or EventBus()
        self._clock = clock or time.monotonic
        self.stats = stats
        self.run_id = run_id or uuid.uuid4().hex[:12]

        self._state = SchedulerState.IDLE
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._stop_event = asyncio.Event()
        self._stop_reason: str | None = None
        self._no_more_work = False
        self._started_at: datetime | None = None
        self._started_clock: float | None = None
        self._deadline: float | None = None
        self._iteration = 0
        self._repo_path = Path(settings.repo_path)
        self._flat_team: Team | None = None
        self._director: Session | None = None
        self._clusters: list[Cluster] = []
        self._recent: deque[str] = deque(maxlen=10)

    # -- public control surface -------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def hierarchical(self) -> bool:
        return self._settings.hierarchical

    @property
    def clusters(self) -> list[Cluster]:
        return list(self._clusters)

    def pause(self) -> None:
        if self._state is not SchedulerState.RUNNING:
            raise SchedulerStateError(f"cannot pause from {self._state.value}")
        self._state = SchedulerState.PAUSED
        self._resumed.clear()
        logger.info("Scheduler paused")
        self._events.publish("scheduler:pause")

    def resume(self) -> None:
        if self._state is not SchedulerState.PAUSED:
            raise SchedulerStateError(f"cannot resume from {self._state.value}")
        self._state = SchedulerState.RUNNING
        self._resumed.set()
        logger.info("Scheduler resumed")
        self._events.publish("scheduler:resume")

    def request_stop(self, reason: str = "requested") -> None:
        """Stop dispatching new work; in-flight workers are allowed to finish."""

        if self._state is SchedulerState.STOPPED:
            return
        self._state = SchedulerState.STOPPED
        self._stop_reason = self._stop_reason or reason
        self._stop_event.set()
        self._resumed.set()
        logger.info("Stop requested", extra={"reason": reason})

    def status(self) -> dict[str, Any]:
        elapsed = self._clock() - self._started_clock if self._started_clock is not None else 0.0
        remaining = max(0.0, self._deadline - self._clock()) if self._deadline is not None else None
        return {
            "run_id": self.run_id,
            "state": self._state.value,
            "topology": "hierarchical" if self.hierarchical else "flat",
            "iteration": self._iteration,
            "elapsed_seconds": round(elapsed, 1),
            "remaining_seconds": round(remaining, 1) if remaining is not None else None,
            "stop_reason": self._stop_reason,
            "sessions": self._registry.status_counts(),
            "clusters": [
                {"id": cluster.id, "feature_branch": cluster.feature_branch, "exhausted": cluster.exhausted}
                for cluster in self._clusters
            ],
            "stats": self.stats.model_dump(),
            "queue": self._queue.stats(),
            "credentials": self._failover.pool.stats(),
            "git": self._git.stats(),
        }

    # -- run lifecycle ----------------------------------------------------------

    async def run(self) -> IntegrationStats:
        """Run until the budget elapses, the planner reports completion or a stop is requested."""

        if self._state is not SchedulerState.IDLE:
            raise SchedulerStateError(f"run() requires an idle scheduler, not {self._state.value}")

        self._state = SchedulerState.RUNNING
        self._started_at = utcnow()
        self._started_clock = self._clock()
        self._deadline = self._started_clock + self._settings.run_budget_seconds
        logger.info(
            "Scheduler starting",
            extra={
                "run_id": self.run_id,
                "topology": "hierarchical" if self.hierarchical else "flat",
                "workers": self._settings.worker_count,
                "budget_minutes": self._settings.max_run_minutes,
            },
        )
        self._events.publish(
            "scheduler:start",
            run_id=self.run_id,
            topology="hierarchical" if self.hierarchical else "flat",
        )

        autosave = asyncio.create_task(self._autosave_loop())
        circuit_error: CircuitOpenError | None = None
        try:
            await self._setup()
            await self._main_loop()
            await self._final_sync()
        except CircuitOpenError as exc:
            circuit_error = exc
            self._stop_reason = "circuit_open"
            logger.critical(
                "Circuit breaker open; ending run",
                extra={"failure_count": self._git.failure_count, "error": str(exc)},
            )
        finally:
            autosave.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await autosave
            await self._finish()

        if circuit_error is not None:
            raise circuit_error
        return self.stats

    async def _finish(self) -> None:
        cleared = self._queue.clear()
        if self._settings.cleanup_worktrees:
            await self._cleanup_worktrees()
        self._state = SchedulerState.STOPPED
        self._stop_reason = self._stop_reason or "stopped"
        self.save_state()
        logger.info(
            "Scheduler stopped",
            extra={"reason": self._stop_reason, "stats": self.stats.model_dump(), "cleared": cleared},
        )
        self._events.publish("scheduler:stop", reason=self._stop_reason, stats=self.stats.model_dump())

    async def _cleanup_worktrees(self) -> None:
        for session in self._registry.all():
            if session.worktree_path == self._repo_path:
                continue
            try:
                await self._worktrees.remove(session.branch_name)
            except _RECOVERABLE as exc:
                logger.warning(
                    "Failed to remove worktree",
                    extra={"branch": session.branch_name, "error": str(exc)},
                )

    def save_state(self) -> None:
        state = PersistedState(
            run_id=self.run_id,
            topology="hierarchical" if self.hierarchical else "flat",
            iteration=self._iteration,
            started_at=self._started_at,
            sessions=self._registry.snapshot(),
            stats=self.stats,
        )
        try:
            self._store.save(state)
        except StateStoreError as exc:
            logger.error("Failed to save scheduler state", extra={"error": str(exc)})
            return
        self._events.publish("state:saved", path=str(self._store.path))

    async def _autosave_loop(self) -> None:
        interval = self._settings.autosave_interval
        if interval <= 0:
            return
        while True:
            await asyncio.sleep(interval)
            self.save_state()

    # -- setup ------------------------------------------------------------------

    async def _setup(self) -> None:
        settings = self._settings
        await ensure_repository(
            self._git,
            self._queue,
            repo_path=self._repo_path,
            repository_url=settings.repository_url,
            branch=settings.integration_branch,
            remote=settings.remote,
        )

        if settings.auto_resume:
            saved = self._store.load()
            if saved is not None:
                self._registry.restore(saved.sessions)
                for name, value in saved.stats.model_dump().items():
                    setattr(self.stats, name, value)
                self._iteration = saved.iteration
                logger.info(
                    "Resuming from saved state",
                    extra={"previous_run_id": saved.run_id, "iteration": saved.iteration},
                )

        worker_ids = [f"worker-{index}" for index in range(1, settings.worker_count + 1)]
        if self.hierarchical:
            await self._form_clusters(worker_ids)
        else:
            await self._form_flat_team(worker_ids)

    async def _form_flat_team(self, worker_ids: list[str]) -> None:
        integration = self._settings.integration_branch
        lead = self._registry.create(
            "lead", SessionRole.LEAD, worktree_path=self._repo_path, branch_name=integration
        )
        paths = await asyncio.gather(
            *(self._worktrees.provision(worker_id, integration) for worker_id in worker_ids)
        )
        workers = [
            self._registry.create(worker_id, SessionRole.WORKER, worktree_path=path, branch_name=worker_id)
            for worker_id, path in zip(worker_ids, paths)
        ]
        for worker_id, path in zip(worker_ids, paths):
            self._events.publish("worktree:provisioned", session_id=worker_id, path=str(path))
        self._flat_team = Team(
            id="flat",
            lead=lead,
            workers=workers,
            integration_branch=integration,
            integration_path=self._repo_path,
            merge_is_global=True,
            planner_role="lead",
        )

    async def _form_clusters(self, worker_ids: list[str]) -> None:
        settings = self._settings
        integration = settings.integration_branch
        self._director = self._registry.create(
            "director", SessionRole.DIRECTOR, worktree_path=self._repo_path, branch_name=integration
        )
        size = settings.cluster_size
        count = math.ceil(len(worker_ids) / size)
        for index in range(1, count + 1):
            cluster_id = f"lead-{index}"
            feature = f"feature/{cluster_id}"
            lead_path = await self._worktrees.provision(feature, integration)
            lead = self._registry.create(
                cluster_id,
                SessionRole.CLUSTER_LEAD,
                worktree_path=lead_path,
                branch_name=feature,
                cluster_id=cluster_id,
            )
            member_ids = worker_ids[(index - 1) * size : index * size]
            paths = await asyncio.gather(
                *(self._worktrees.provision(worker_id, feature) for worker_id in member_ids)
            )
            members = [
                self._registry.create(
                    worker_id,
                    SessionRole.WORKER,
                    worktree_path=path,
                    branch_name=worker_id,
                    cluster_id=cluster_id,
                )
                for worker_id, path in zip(member_ids, paths)
            ]
            team = Team(
                id=cluster_id,
                lead=lead,
                workers=members,
                integration_branch=feature,
                integration_path=lead_path,
                merge_is_global=False,
                planner_role="cluster_lead",
            )
            self._clusters.append(
                Cluster(id=cluster_id, lead=lead, feature_branch=feature, members=members, team=team)
            )
            logger.info(
                "Formed cluster",
                extra={"cluster_id": cluster_id, "feature_branch": feature, "members": member_ids},
            )

    # -- iterations -------------------------------------------------------------

    def _budget_exhausted(self) -> bool:
        return self._deadline is not None and self._clock() >= self._deadline

    def _should_stop(self) -> bool:
        if self._stop_event.is_set() or self._no_more_work:
            return True
        if self._budget_exhausted():
            self._stop_reason = self._stop_reason or "budget_exhausted"
            return True
        return False

    async def _wait_if_paused(self) -> None:
        if not self._resumed.is_set():
            await self._resumed.wait()

    async def _interruptible_sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds; return ``False`` if a stop cut it short."""

        if delay <= 0:
            return not self._stop_event.is_set()
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False

    def read_direction(self) -> str:
        if self._settings.project_direction:
            return self._settings.project_direction
        direction_file = self._repo_path / "PROJECT_DIRECTION.md"
        if direction_file.is_file():
            return direction_file.read_text(encoding="utf-8")
        return DEFAULT_DIRECTION

    async def _main_loop(self) -> None:
        while not self._should_stop():
            await self._wait_if_paused()
            if self._should_stop():
                break
            self._iteration += 1
            goal = self.read_direction()
            logger.info("Iteration starting", extra={"iteration": self._iteration})
            self._events.publish("iteration:start", iteration=self._iteration)
            if self.hierarchical:
                await self._run_hierarchical_pass(goal)
            elif await self._run_team_pass(self._flat_team, goal):
                self._no_more_work = True
            self._events.publish(
                "iteration:complete", iteration=self._iteration, stats=self.stats.model_dump()
            )
            if not self._should_stop():
                await self._interruptible_sleep(self._settings.iteration_pause)

        if self._no_more_work:
            self._stop_reason = self._stop_reason or "no_more_work"

    async def _run_hierarchical_pass(self, goal: str) -> None:
        active = [cluster for cluster in self._clusters if not cluster.exhausted]
        if not active:
            self._no_more_work = True
            return

        await self._wait_if_paused()
        plan = await self._planner.plan(
            self._director,
            [cluster.id for cluster in active],
            goal=goal,
            role="director",
            context=list(self._recent),
        )
        if plan.complete:
            self._no_more_work = True
            return

        goals = {assignment.worker_id: assignment for assignment in plan.assignments}
        scheduled = [cluster for cluster in active if cluster.id in goals]
        results = await asyncio.gather(
            *(self._run_cluster(cluster, goals[cluster.id]) for cluster in scheduled),
            return_exceptions=True,
        )

        finished: list[Cluster] = []
        for cluster, outcome in zip(scheduled, results):
            if isinstance(outcome, CircuitOpenError):
                raise outcome
            if isinstance(outcome, BaseException):
                cluster.failures += 1
                logger.error(
                    "Cluster pass failed; excluding it from this merge",
                    extra={"cluster_id": cluster.id, "error": repr(outcome)},
                )
                continue
            finished.append(cluster)

        if all(cluster.exhausted for cluster in self._clusters):
            self._no_more_work = True

        for cluster in finished:
            await self._merge_feature(cluster)

    async def _run_cluster(self, cluster: Cluster, goal: Assignment) -> None:
        await self._sync_feature_branch(cluster)
        cluster.exhausted = await self._run_team_pass(cluster.team, goal.describe())

    async def _sync_feature_branch(self, cluster: Cluster) -> None:
        """Bring the integration branch into the cluster's feature branch."""

        outcome = await self._merger.merge(
            cluster.lead.worktree_path,
            self._settings.integration_branch,
            is_global=False,
            message=f"Sync {self._settings.integration_branch} into {cluster.feature_branch}",
        )
        self.stats.conflicts += outcome.conflicts

    async def _merge_feature(self, cluster: Cluster) -> None:
        try:
            outcome = await self._merger.merge(
                self._repo_path,
                cluster.feature_branch,
                is_global=True,
                message=f"Merge {cluster.feature_branch}",
            )
        except CircuitOpenError:
            raise
        except _RECOVERABLE as exc:
            self.stats.merge_failures += 1
            logger.error(
                "Feature branch merge failed",
                extra={"cluster_id": cluster.id, "branch": cluster.feature_branch, "error": str(exc)},
            )
            self._events.publish("merge:failed", session_id=cluster.id, branch=cluster.feature_branch)
            return

        self.stats.conflicts += outcome.conflicts
        if not outcome.merged:
            return
        self.stats.feature_merges += 1
        self._events.publish(
            "feature:merged",
            session_id=cluster.id,
            branch=cluster.feature_branch,
            conflicts=outcome.conflicts,
        )
        await self._push()

    # -- team pass: plan, dispatch, reap-and-reassign ---------------------------

    async def _run_team_pass(self, team: Team, goal: str) -> bool:
        """Run one plan-dispatch-reap pass; return ``True`` when the lead reports no work left."""

        team.exhausted = False
        workers = [worker for worker in team.workers if worker.available or worker.status is SessionStatus.WAITING]
        if not workers:
            return False

        await self._wait_if_paused()
        if self._should_stop():
            return False
        plan = await self._planner.plan(
            team.lead,
            [worker.id for worker in workers],
            goal=goal,
            role=team.planner_role,
            context=list(self._recent),
        )
        if plan.complete:
            team.exhausted = True
            return True

        assignments = {assignment.worker_id: assignment for assignment in plan.assignments}
        in_flight: dict[asyncio.Task, tuple[Session, Assignment]] = {}
        for worker in workers:
            assignment = assignments.get(worker.id)
            if assignment is not None:
                in_flight[self._dispatch(team, worker, assignment, goal=goal)] = (worker, assignment)

        stop_waiter = asyncio.ensure_future(self._stop_event.wait())
        drain_deadline: float | None = None
        try:
            while in_flight:
                stopping = self._should_stop()
                if stopping and drain_deadline is None:
                    drain_deadline = self._clock() + self._settings.shutdown_timeout
                    logger.info(
                        "Draining in-flight workers",
                        extra={"team": team.id, "in_flight": len(in_flight), "reason": self._stop_reason},
                    )

                if drain_deadline is not None:
                    timeout = drain_deadline - self._clock()
                    if timeout <= 0:
                        await self._cancel_in_flight(team, in_flight)
                        break
                    waitables = set(in_flight)
                else:
                    timeout = max(0.0, self._deadline - self._clock()) if self._deadline else None
                    waitables = {*in_flight, stop_waiter}

                done, _ = await asyncio.wait(waitables, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is stop_waiter:
                        continue
                    worker, assignment = in_flight.pop(task)
                    outcome = task.result()
                    follow_up = await self._handle_outcome(team, worker, assignment, outcome, goal)
                    if follow_up is not None:
                        in_flight[follow_up[0]] = follow_up[1]
        except BaseException:
            for task in in_flight:
                task.cancel()
            raise
        finally:
            stop_waiter.cancel()
        return False

    def _dispatch(
        self,
        team: Team,
        worker: Session,
        assignment: Assignment,
        *,
        goal: str,
        delay: float = 0.0,
    ) -> asyncio.Task:
        worker.status = SessionStatus.WAITING if delay else SessionStatus.RUNNING
        return asyncio.create_task(
            self._run_worker(team, worker, assignment, goal=goal, delay=delay),
            name=f"worker:{worker.id}",
        )

    async def _run_worker(
        self,
        team: Team,
        worker: Session,
        assignment: Assignment,
        *,
        goal: str,
        delay: float,
    ) -> WorkerOutcome:
        if delay:
            if not await self._interruptible_sleep(delay):
                worker.status = SessionStatus.IDLE
                return WorkerOutcome(worker.id, assignment, WorkerStatus.CANCELLED)
            self._failover.reselect(worker)
        await self._wait_if_paused()
        if self._stop_event.is_set():
            worker.status = SessionStatus.IDLE
            return WorkerOutcome(worker.id, assignment, WorkerStatus.CANCELLED)

        try:
            await self._worktrees.reset_to(worker.worktree_path, team.integration_branch)
        except CircuitOpenError:
            raise
        except _RECOVERABLE as exc:
            worker.status = SessionStatus.FAILED
            return WorkerOutcome(worker.id, assignment, WorkerStatus.FAILED, error=f"reset failed: {exc}")

        profile = self._profiles["worker"]
        logger.info(
            "Dispatching assignment",
            extra={"session_id": worker.id, "team": team.id, "area": assignment.area},
        )
        self._events.publish("task:start", session_id=worker.id, assignment=assignment.model_dump())
        try:
            result = await self._registry.execute(
                worker,
                build_worker_prompt(profile, assignment, goal=goal),
                permissions=profile.effective_permissions,
                model=profile.model or self._settings.worker_model,
            )
        except SessionBusyError as exc:
            return WorkerOutcome(worker.id, assignment, WorkerStatus.FAILED, error=str(exc))

        if result.rate_limited:
            status = WorkerStatus.RATE_LIMITED
        elif result.success:
            status = WorkerStatus.SUCCEEDED
        else:
            status = WorkerStatus.FAILED
        return WorkerOutcome(worker.id, assignment, status, result=result, error=result.error)

    async def _handle_outcome(
        self,
        team: Team,
        worker: Session,
        assignment: Assignment,
        outcome: WorkerOutcome,
        goal: str,
    ) -> tuple[asyncio.Task, tuple[Session, Assignment]] | None:
        if outcome.status is WorkerStatus.SUCCEEDED:
            self._events.publish(
                "task:complete",
                session_id=worker.id,
                area=assignment.area,
                duration_ms=outcome.result.duration_ms if outcome.result else 0,
            )
            await self._integrate(team, worker, assignment)
            following = await self._next_assignment(team, worker, assignment, goal)
            if following is None:
                return None
            return self._dispatch(team, worker, following, goal=goal), (worker, following)

        if outcome.status is WorkerStatus.RATE_LIMITED:
            throttled = self._failover.pool.name(worker.credential_index)
            decision = self._failover.handle(worker)
            self._events.publish(
                "task:rate_limited",
                session_id=worker.id,
                area=assignment.area,
                delay=decision.delay,
                credential=throttled,
            )
            if self._should_stop():
                worker.status = SessionStatus.IDLE
                return None
            logger.info(
                "Redispatching throttled assignment",
                extra={"session_id": worker.id, "area": assignment.area, "delay": decision.delay},
            )
            task = self._dispatch(team, worker, assignment, goal=goal, delay=decision.delay)
            return task, (worker, assignment)

        if outcome.status is WorkerStatus.FAILED:
            self.stats.worker_failures += 1
            logger.warning(
                "Worker failed; excluding its branch from merge",
                extra={"session_id": worker.id, "area": assignment.area, "error": (outcome.error or "")[:500]},
            )
            self._events.publish("task:failed", session_id=worker.id, area=assignment.area, error=outcome.error)
        return None

    async def _integrate(self, team: Team, worker: Session, assignment: Assignment) -> None:
        try:
            committed = await self._worktrees.commit_pending(
                worker.worktree_path, f"{worker.id}: {assignment.area}"
            )
            if committed:
                self.stats.commits += 1
            outcome = await self._merger.merge(
                team.integration_path,
                worker.branch_name,
                is_global=team.merge_is_global,
                message=f"Merge {worker.branch_name}: {assignment.area}",
            )
        except CircuitOpenError:
            raise
        except _RECOVERABLE as exc:
            self.stats.merge_failures += 1
            logger.error(
                "Merge failed",
                extra={"session_id": worker.id, "target": team.integration_branch, "error": str(exc)},
            )
            self._events.publish("merge:failed", session_id=worker.id, error=str(exc))
            return

        self.stats.conflicts += outcome.conflicts
        if outcome.conflicts:
            self._events.publish(
                "merge:conflict",
                session_id=worker.id,
                resolutions=dict(outcome.resolutions),
            )
        if not outcome.merged:
            logger.info("Nothing to merge", extra={"session_id": worker.id})
            return

        self.stats.merges += 1
        self._recent.append(f"{worker.id}: {assignment.area}")
        logger.info(
            "Merged worker branch",
            extra={
                "session_id": worker.id,
                "target": team.integration_branch,
                "conflicts": outcome.conflicts,
                "merges": self.stats.merges,
            },
        )
        self._events.publish(
            "merge:completed",
            session_id=worker.id,
            branch=worker.branch_name,
            target=team.integration_branch,
            conflicts=outcome.conflicts,
        )
        if team.merge_is_global:
            await self._push()

    async def _push(self) -> None:
        branch = self._settings.integration_branch
        try:
            pushed = await self._merger.push(self._repo_path, branch)
        except CircuitOpenError:
            raise
        except _RECOVERABLE as exc:
            self.stats.push_failures += 1
            logger.error("Push failed", extra={"branch": branch, "error": str(exc)})
            self._events.publish("push:failed", branch=branch, error=str(exc))
            return
        if pushed:
            self.stats.pushes += 1
            self._events.publish("push:completed", branch=branch)

    async def _next_assignment(
        self,
        team: Team,
        worker: Session,
        completed: Assignment,
        goal: str,
    ) -> Assignment | None:
        if team.exhausted or self._should_stop():
            return None
        await self._wait_if_paused()
        if self._should_stop():
            return None
        plan = await self._planner.reassign(
            team.lead,
            worker.id,
            goal=goal,
            completed=completed,
            role=team.planner_role,
            context=list(self._recent),
        )
        if plan.complete:
            team.exhausted = True
            return None
        return plan.assignments[0] if plan.assignments else None

    async def _cancel_in_flight(self, team: Team, in_flight: dict[asyncio.Task, tuple[Session, Assignment]]) -> None:
        logger.warning(
            "Shutdown timeout reached; cancelling in-flight workers",
            extra={"team": team.id, "workers": [worker.id for worker, _ in in_flight.values()]},
        )
        for task in in_flight:
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        for worker, _ in in_flight.values():
            worker.status = SessionStatus.IDLE
        in_flight.clear()

    async def _final_sync(self) -> None:
        try:
            outcome = await self._merger.final_sync(self._repo_path, self._settings.integration_branch)
        except CircuitOpenError:
            raise
        except _RECOVERABLE as exc:
            logger.error("Final sync failed", extra={"error": str(exc)})
            self._events.publish("push:failed", branch=self._settings.integration_branch, error=str(exc))
            return
        logger.info(
            "Final sync complete",
            extra={"rebased": outcome.rebased, "merged_remote": outcome.merged_remote, "pushed": outcome.pushed},
        )


__all__ = ["DEFAULT_DIRECTION", "Scheduler"]
