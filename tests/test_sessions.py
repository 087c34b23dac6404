from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from flotilla.events import EventBus, EventRecorder
from flotilla.executor import TaskResult
from flotilla.ratelimit import Credential, CredentialPool, RateLimitDetector
from flotilla.sessions import (
    IntegrationStats,
    PersistedSession,
    PersistedState,
    SessionBusyError,
    SessionError,
    SessionRegistry,
    SessionRole,
    SessionStatus,
    StateStore,
)

from fakes import FakeTaskExecutor, ScriptedRun


def _registry(executor: FakeTaskExecutor, **kwargs) -> SessionRegistry:
    pool = CredentialPool([Credential(name="a"), Credential(name="b")])
    return SessionRegistry(executor, pool, **kwargs)


def test_create_assigns_credentials_round_robin() -> None:
    registry = _registry(FakeTaskExecutor())

    first = registry.create("worker-1", SessionRole.WORKER, worktree_path=Path("/w1"), branch_name="worker-1")
    second = registry.create("worker-2", SessionRole.WORKER, worktree_path=Path("/w2"), branch_name="worker-2")
    again = registry.create("worker-1", SessionRole.WORKER, worktree_path=Path("/w1b"), branch_name="worker-1")

    assert (first.credential_index, second.credential_index) == (0, 1)
    assert again is first
    assert first.worktree_path == Path("/w1b")
    assert len(registry) == 2
    with pytest.raises(SessionError):
        registry.get("missing")


def test_execute_records_metrics_and_handle() -> None:
    executor = FakeTaskExecutor(
        [ScriptedRun(result=TaskResult(success=True, output="done", handle="thread-1"), progress=["step one"])]
    )
    events = EventBus()
    recorder = EventRecorder()
    events.subscribe(recorder)
    registry = _registry(executor, events=events)

    async def scenario():
        session = registry.create("worker-1", SessionRole.WORKER, worktree_path=Path("/w1"), branch_name="worker-1")
        result = await registry.execute(session, "do the work please")
        return session, result

    session, result = asyncio.run(scenario())

    assert result.success
    assert session.status is SessionStatus.IDLE
    assert session.resumable_handle == "thread-1"
    assert session.metrics.tasks_completed == 1
    assert session.metrics.progress_events == 1
    assert session.metrics.estimated_tokens == len("do the work please") // 4 + len("done") // 4
    assert executor.requests[0].env == {}
    assert recorder.of_type("progress")[0].data["text"] == "step one"


def test_second_invocation_on_busy_session_is_rejected() -> None:
    gate = asyncio.Event()
    executor = FakeTaskExecutor([ScriptedRun(result=TaskResult(success=True), gate=gate)])
    registry = _registry(executor)

    async def scenario() -> None:
        session = registry.create("worker-1", SessionRole.WORKER, worktree_path=Path("/w1"), branch_name="worker-1")
        first = asyncio.create_task(registry.execute(session, "first"))
        await asyncio.sleep(0)
        assert registry.is_active("worker-1")
        with pytest.raises(SessionBusyError):
            await registry.execute(session, "second")
        gate.set()
        await first

    asyncio.run(scenario())

    assert len(executor.requests) == 1


def test_invalid_handle_is_cleared_and_retried_once() -> None:
    executor = FakeTaskExecutor(
        [
            TaskResult(success=False, error="thread not found", handle_invalid=True),
            TaskResult(success=True, output="fresh", handle="thread-2"),
        ]
    )
    registry = _registry(executor)

    async def scenario():
        session = registry.create("worker-1", SessionRole.WORKER, worktree_path=Path("/w1"), branch_name="worker-1")
        session.resumable_handle = "thread-stale"
        result = await registry.execute(session, "prompt")
        return session, result

    session, result = asyncio.run(scenario())

    assert result.success
    assert [request.handle for request in executor.requests] == ["thread-stale", None]
    assert session.resumable_handle == "thread-2"
    assert session.metrics.invocations == 2


def test_failed_output_with_throttling_text_is_rate_limited() -> None:
    executor = FakeTaskExecutor([TaskResult(success=False, error="upstream said 429 Too Many Requests")])
    registry = _registry(executor, detector=RateLimitDetector(), scan_interval=0.01)

    async def scenario():
        session = registry.create("worker-1", SessionRole.WORKER, worktree_path=Path("/w1"), branch_name="worker-1")
        return session, await registry.execute(session, "prompt")

    session, result = asyncio.run(scenario())

    assert result.rate_limited
    assert session.status is SessionStatus.WAITING
    assert session.metrics.rate_limited == 1


def test_plain_failure_marks_session_failed() -> None:
    executor = FakeTaskExecutor([TaskResult(success=False, error="compile error")])
    registry = _registry(executor, detector=RateLimitDetector())

    async def scenario():
        session = registry.create("worker-1", SessionRole.WORKER, worktree_path=Path("/w1"), branch_name="worker-1")
        return session, await registry.execute(session, "prompt")

    session, result = asyncio.run(scenario())

    assert not result.rate_limited
    assert session.status is SessionStatus.FAILED
    assert session.metrics.last_error == "compile error"
    assert session.available


def test_state_store_round_trip_restores_running_sessions_idle(tmp_path: Path) -> None:
    registry = _registry(FakeTaskExecutor())
    session = registry.create("worker-1", SessionRole.WORKER, worktree_path=tmp_path / "w1", branch_name="worker-1")
    session.status = SessionStatus.RUNNING
    session.resumable_handle = "thread-9"
    session.metrics.tasks_completed = 4
    store = StateStore(tmp_path / "state" / "flotilla.json")

    store.save(
        PersistedState(
            run_id="run-1",
            topology="flat",
            iteration=3,
            sessions=registry.snapshot(),
            stats=IntegrationStats(merges=2, conflicts=1),
        )
    )
    loaded = store.load()

    assert loaded is not None
    assert loaded.iteration == 3
    assert loaded.stats.merges == 2
    assert not store.path.with_suffix(".json.tmp").exists()

    fresh = _registry(FakeTaskExecutor())
    assert fresh.restore(loaded.sessions) == 1
    restored = fresh.get("worker-1")
    assert restored.status is SessionStatus.IDLE
    assert restored.resumable_handle == "thread-9"
    assert restored.metrics.tasks_completed == 4


def test_state_store_ignores_unreadable_snapshot(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    store = StateStore(path)
    assert store.load() is None

    path.write_text("{not json", encoding="utf-8")
    assert store.load() is None

    path.write_text('{"version": 7, "run_id": "x", "topology": "flat"}', encoding="utf-8")
    assert store.load() is None


def test_restore_reassigns_out_of_range_credentials() -> None:
    record = PersistedSession(
        id="worker-5",
        role=SessionRole.WORKER,
        status=SessionStatus.WAITING,
        worktree_path="/w5",
        branch_name="worker-5",
        credential_index=9,
        created_at="2026-01-01T00:00:00+00:00",
    )
    registry = _registry(FakeTaskExecutor())

    registry.restore([record])

    session = registry.get("worker-5")
    assert session.credential_index < 2
    assert session.status is SessionStatus.IDLE
