"""Registry of worker sessions and their executor invocations."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from pathlib import Path
from typing import Iterable

from ..events import EventBus
from ..executor import ExecutionRequest, Permissions, TaskExecution, TaskExecutor, TaskResult
from ..ratelimit.credentials import CredentialPool
from ..ratelimit.detector import RateLimitDetector, RateLimitWatcher
from .models import PersistedSession, Session, SessionRole, SessionStatus, estimate_tokens, utcnow

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Raised for unknown sessions."""


class SessionBusyError(SessionError):
    """Raised when a session already has an active invocation."""


class SessionRegistry:
    """Track sessions and run at most one executor invocation per session."""

    def __init__(
        self,
        executor: TaskExecutor,
        pool: CredentialPool,
        *,
        detector: RateLimitDetector | None = None,
        events: EventBus | None = None,
        scan_interval: float = 10.0,
    ) -> None:
        self._executor = executor
        self._pool = pool
        self._detector = detector
        self._events = events
        self._scan_interval = scan_interval
        self._sessions: dict[str, Session] = {}
        self._active: set[str] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def create(
        self,
        session_id: str,
        role: SessionRole,
        *,
        worktree_path: Path,
        branch_name: str,
        cluster_id: str | None = None,
    ) -> Session:
        """Register a session, or refresh the binding of an existing one."""

        existing = self._sessions.get(session_id)
        if existing is not None:
            existing.worktree_path = Path(worktree_path)
            existing.branch_name = branch_name
            existing.cluster_id = cluster_id
            return existing

        session = Session(
            id=session_id,
            role=role,
            worktree_path=Path(worktree_path),
            branch_name=branch_name,
            credential_index=self._pool.next_index(),
            cluster_id=cluster_id,
        )
        self._sessions[session_id] = session
        logger.info(
            "Created session",
            extra={
                "session_id": session_id,
                "role": role.value,
                "branch": branch_name,
                "credential": self._pool.name(session.credential_index),
            },
        )
        self._publish("session:created", session_id, role=role.value, branch=branch_name)
        return session

    def get(self, session_id: str) -> Session:
        try:
            return self._sessions[session_id]
        except KeyError as exc:
            raise SessionError(f"Unknown session '{session_id}'") from exc

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    def by_role(self, role: SessionRole) -> list[Session]:
        return [session for session in self._sessions.values() if session.role == role]

    def in_cluster(self, cluster_id: str) -> list[Session]:
        return [session for session in self._sessions.values() if session.cluster_id == cluster_id]

    def idle(self, role: SessionRole | None = None) -> list[Session]:
        return [
            session
            for session in self._sessions.values()
            if session.available and (role is None or session.role == role)
        ]

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for session in self._sessions.values():
            counts[session.status.value] = counts.get(session.status.value, 0) + 1
        return counts

    def snapshot(self) -> list[PersistedSession]:
        return [PersistedSession.from_session(session) for session in self._sessions.values()]

    def restore(self, records: Iterable[PersistedSession]) -> int:
        """Load sessions from a snapshot; running sessions come back idle."""

        restored = 0
        for record in records:
            session = record.to_session()
            if session.credential_index >= len(self._pool):
                session.credential_index = self._pool.next_index()
            self._sessions[session.id] = session
            restored += 1
        if restored:
            logger.info("Restored sessions from saved state", extra={"count": restored})
        return restored

    def mark(self, session: Session, status: SessionStatus) -> None:
        session.status = status

    async def execute(
        self,
        session: Session,
        prompt: str,
        *,
        permissions: Permissions = Permissions.WORKSPACE_WRITE,
        model: str | None = None,
    ) -> TaskResult:
        """Run one invocation for ``session`` and classify its outcome.

        An invalid resumable handle is discarded and the invocation repeated
        once without it. Failed results whose output shows throttling markers
        are reported as rate limited.
        """

        if session.id in self._active:
            raise SessionBusyError(f"Session '{session.id}' already has an active invocation")

        self._active.add(session.id)
        session.status = SessionStatus.RUNNING
        session.last_active_at = utcnow()
        try:
            result = await self._invoke(session, prompt, permissions, model)
            if result.handle_invalid:
                logger.warning(
                    "Resumable handle rejected; starting a fresh context",
                    extra={"session_id": session.id},
                )
                session.resumable_handle = None
                self._publish("session:handle_cleared", session.id)
                result = await self._invoke(session, prompt, permissions, model)
        except asyncio.CancelledError:
            session.status = SessionStatus.IDLE
            raise
        finally:
            self._active.discard(session.id)
            session.last_active_at = utcnow()

        metrics = session.metrics
        metrics.total_duration_ms += result.duration_ms
        metrics.estimated_tokens += estimate_tokens(prompt) + estimate_tokens(result.output)
        if result.rate_limited:
            metrics.rate_limited += 1
            session.status = SessionStatus.WAITING
        elif result.success:
            metrics.tasks_completed += 1
            metrics.last_error = None
            session.status = SessionStatus.IDLE
        else:
            metrics.tasks_failed += 1
            metrics.last_error = (result.error or "")[:2000] or None
            session.status = SessionStatus.FAILED
        return result

    async def _invoke(
        self,
        session: Session,
        prompt: str,
        permissions: Permissions,
        model: str | None,
    ) -> TaskResult:
        request = ExecutionRequest(
            prompt=prompt,
            handle=session.resumable_handle,
            permissions=permissions,
            model=model,
            cwd=session.worktree_path,
            env=self._pool.env_for(session.credential_index),
            session_id=session.id,
        )
        session.metrics.invocations += 1
        execution = self._executor.invoke(request)

        watcher: RateLimitWatcher | None = None
        if self._detector is not None:
            watcher = RateLimitWatcher(
                self._detector,
                execution,
                interval=self._scan_interval,
                on_detect=lambda: self._publish("ratelimit:suspected", session.id),
            ).start()
        pump = asyncio.create_task(self._pump(session, execution))

        try:
            result = await execution.result()
        except asyncio.CancelledError:
            await execution.cancel()
            pump.cancel()
            if watcher is not None:
                await watcher.stop()
            raise
        except Exception as exc:
            logger.exception("Executor invocation failed", extra={"session_id": session.id})
            result = TaskResult(success=False, error=str(exc))

        flagged = await watcher.stop() if watcher is not None else False
        with contextlib.suppress(asyncio.CancelledError):
            await pump

        if result.handle and not result.handle_invalid:
            session.resumable_handle = result.handle

        if not result.success and not result.rate_limited and self._detector is not None:
            if flagged or self._detector.matches(result.error) or self._detector.scan_tail(result.output):
                result = dataclasses.replace(result, rate_limited=True)
        return result

    async def _pump(self, session: Session, execution: TaskExecution) -> None:
        async for event in execution.progress():
            session.metrics.progress_events += 1
            if event.kind == "tool":
                session.metrics.tool_calls += 1
            self._publish("progress", session.id, kind=event.kind, text=event.text[:500])

    def _publish(self, event_type: str, session_id: str, **data) -> None:
        if self._events is not None:
            self._events.publish(event_type, session_id=session_id, **data)


__all__ = ["SessionBusyError", "SessionError", "SessionRegistry"]
