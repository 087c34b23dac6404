from __future__ import annotations

import argparse
import importlib.util
import json
from collections import defaultdict
from datetime import datetime
from pathlib import Path

import pytest

from flotilla.sessions import IntegrationStats, PersistedSession, PersistedState, SessionRole, SessionStatus, StateStore
from flotilla.storage import ChromaStore, ChromaUnavailableError


class StubCollection:
    def __init__(self) -> None:
        self.rows: list[tuple[str, str, dict]] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        self.rows.extend(zip(ids, documents, metadatas))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        clauses = where.get("$and", [where]) if where else []
        rows = [
            row
            for row in self.rows
            if all(row[2].get(key) == value for clause in clauses for key, value in clause.items())
        ]
        return {
            "ids": [row[0] for row in rows],
            "documents": [row[1] for row in rows],
            "metadatas": [row[2] for row in rows],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def _load_diag():
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "flotilla_diag.py"
    spec = importlib.util.spec_from_file_location("flotilla_diag_test_module", module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


@pytest.fixture
def diag(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FLOTILLA_STATE_PATH", str(tmp_path / "state.json"))
    return _load_diag()


@pytest.fixture
def journal(diag, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> ChromaStore:
    client = StubClient()
    store = ChromaStore(
        tmp_path / "chroma",
        client_factory=lambda: client,
        clock=lambda: datetime.fromisoformat("2026-01-01T00:00:00+00:00"),
    )
    monkeypatch.setattr(diag, "load_store", lambda _settings: store)
    return store


def _record(store: ChromaStore, event_type: str, session_id: str | None = "worker-1", run_id: str = "run-1", **body):
    store.record_event(run_id=run_id, session_id=session_id, event_type=event_type, body=body)


def test_merges_reports_counts(diag, journal: ChromaStore, capsys: pytest.CaptureFixture[str]) -> None:
    _record(journal, "merge:completed", conflicts=0)
    _record(journal, "merge:completed", session_id="worker-2", conflicts=3)
    _record(journal, "merge:conflict", session_id="worker-2")
    _record(journal, "merge:failed", session_id="worker-3")
    _record(journal, "merge:completed", run_id="run-2", conflicts=1)

    diag.cmd_merges(argparse.Namespace(run_id="run-1"))

    payload = json.loads(capsys.readouterr().out)
    assert payload == {
        "merges": 2,
        "conflict_merges": 1,
        "conflicted_files": 3,
        "failures": 1,
        "by_session": {"worker-1": 1, "worker-2": 1},
    }


def test_ratelimits_groups_by_credential(diag, journal: ChromaStore, capsys: pytest.CaptureFixture[str]) -> None:
    _record(journal, "task:rate_limited", credential="primary")
    _record(journal, "task:rate_limited", session_id="worker-2", credential="primary")
    _record(journal, "ratelimit:rotated", from_credential="primary", to_credential="backup")
    _record(journal, "ratelimit:exhausted", delay=300)

    diag.cmd_ratelimits(argparse.Namespace(run_id=None))

    payload = json.loads(capsys.readouterr().out)
    assert payload["rate_limited_tasks"] == 2
    assert payload["rotations"] == 1
    assert payload["pool_exhausted"] == 1
    assert payload["by_credential"] == {"primary": 2}


def test_events_filters_and_limits(diag, journal: ChromaStore, capsys: pytest.CaptureFixture[str]) -> None:
    _record(journal, "task:failed", error="auth tests failing")
    _record(journal, "task:failed", session_id="worker-2", error="lint")
    _record(journal, "task:complete")

    diag.main(["events", "--type", "task:failed", "--query", "auth"])
    matched = json.loads(capsys.readouterr().out)
    diag.main(["events", "--run-id", "run-1", "--limit", "1"])
    latest = json.loads(capsys.readouterr().out)

    assert [entry["session_id"] for entry in matched] == ["worker-1"]
    assert [entry["event_type"] for entry in latest] == ["task:complete"]


def test_summary_uses_run_filter(diag, journal: ChromaStore, capsys: pytest.CaptureFixture[str]) -> None:
    _record(journal, "merge:completed")
    _record(journal, "scheduler:stop", session_id=None, reason="no_more_work")
    _record(journal, "merge:completed", run_id="run-2")

    diag.main(["summary", "--run-id", "run-1"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["events"] == 2
    assert payload["merges"] == 1
    assert payload["by_type"] == {"merge:completed": 1, "scheduler:stop": 1}


def test_sessions_reads_saved_state(diag, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    created = datetime.fromisoformat("2026-01-01T00:00:00+00:00")
    StateStore(tmp_path / "state.json").save(
        PersistedState(
            run_id="run-9",
            topology="flat",
            iteration=4,
            sessions=[
                PersistedSession(
                    id="lead",
                    role=SessionRole.LEAD,
                    status=SessionStatus.IDLE,
                    worktree_path="/repo",
                    branch_name="main",
                    created_at=created,
                ),
                PersistedSession(
                    id="worker-1",
                    role=SessionRole.WORKER,
                    status=SessionStatus.FAILED,
                    worktree_path="/w/worker-1",
                    branch_name="worker-1",
                    created_at=created,
                ),
            ],
            stats=IntegrationStats(merges=5),
        )
    )

    diag.main(["sessions", "--role", "worker"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["run_id"] == "run-9"
    assert payload["iteration"] == 4
    assert [session["id"] for session in payload["sessions"]] == ["worker-1"]
    assert payload["sessions"][0]["status"] == "failed"


def test_sessions_without_state_exits(diag, capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        diag.main(["sessions"])

    assert excinfo.value.code == 1
    assert "No saved state" in capsys.readouterr().out


def test_missing_chroma_exits_with_message(diag, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    def unavailable():
        raise ChromaUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(diag, "ChromaStore", lambda path: ChromaStore(path, client_factory=unavailable))

    with pytest.raises(SystemExit):
        diag.main(["summary"])

    assert "Chroma unavailable" in capsys.readouterr().out
