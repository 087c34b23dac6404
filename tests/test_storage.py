from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from flotilla.events import EventBus
from flotilla.storage import RUN_SESSION, ChromaStore, ChromaUnavailableError, EventJournal


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


def _matches(metadata: dict[str, Any], where: dict[str, Any]) -> bool:
    if "$and" in where:
        return all(_matches(metadata, clause) for clause in where["$and"])
    return all(metadata.get(key) == value for key, value in where.items())


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = [record for record in self.records if not where or _matches(record.metadata, where)]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def _store(tmp_path: Path) -> ChromaStore:
    client = StubClient()
    return ChromaStore(
        tmp_path,
        client_factory=lambda: client,
        clock=lambda: datetime.fromisoformat("2026-01-01T00:00:00+00:00"),
    )


def test_record_and_fetch_events(tmp_path: Path) -> None:
    store = _store(tmp_path)

    entry = store.record_event(
        run_id="run-1",
        session_id="worker-1",
        event_type="merge:completed",
        body={"branch": "worker-1", "conflicts": 0, "resolutions": {"a.txt": "theirs"}},
    )

    assert entry.metadata["sequence"] == 1
    assert entry.metadata["branch"] == "worker-1"
    assert "resolutions" not in entry.metadata

    events = store.fetch_session_events("worker-1")
    assert len(events) == 1
    assert events[0].data["resolutions"] == {"a.txt": "theirs"}
    assert events[0].timestamp == datetime.fromisoformat("2026-01-01T00:00:00+00:00")


def test_sequence_increments_per_run(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_event(run_id="run-1", session_id=None, event_type="a", body="A")
    store.record_event(run_id="run-1", session_id=None, event_type="b", body="B")
    store.record_event(run_id="run-2", session_id=None, event_type="a", body="C")

    entries = store.fetch_session_events(RUN_SESSION)
    assert [(entry.run_id, entry.metadata["sequence"]) for entry in entries] == [
        ("run-1", 1),
        ("run-1", 2),
        ("run-2", 1),
    ]
    assert entries[0].data == {"text": "A"}


def test_search_combines_filters_and_query(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.record_event(run_id="run-1", session_id="worker-1", event_type="task:failed", body={"error": "auth tests"})
    store.record_event(run_id="run-1", session_id="worker-2", event_type="task:failed", body={"error": "lint"})
    store.record_event(run_id="run-2", session_id="worker-1", event_type="task:failed", body={"error": "auth again"})

    results = store.search_events("auth", filters={"run_id": "run-1", "event_type": "task:failed"})

    assert [entry.session_id for entry in results] == ["worker-1"]
    assert len(store.events_of_type("task:failed", run_id="run-2")) == 1
    assert len(store.search_events(limit=2)) == 2


def test_summarize_counts_event_types(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for event_type in ("merge:completed", "merge:completed", "merge:conflict", "task:rate_limited", "task:failed"):
        store.record_event(run_id="run-1", session_id="worker-1", event_type=event_type, body={})
    store.record_event(run_id="run-2", session_id="worker-1", event_type="merge:completed", body={})

    summary = store.summarize("run-1")

    assert summary["runs"] == ["run-1"]
    assert summary["events"] == 5
    assert summary["merges"] == 2
    assert summary["conflict_merges"] == 1
    assert summary["rate_limits"] == 1
    assert summary["failures"] == 1
    assert store.summarize()["runs"] == ["run-1", "run-2"]


def test_journal_records_bus_events_and_skips_progress(tmp_path: Path) -> None:
    store = _store(tmp_path)
    bus = EventBus()
    bus.subscribe(EventJournal(store, "run-7"))

    bus.publish("progress", session_id="worker-1", text="thinking")
    bus.publish("merge:completed", session_id="worker-1", branch="worker-1", conflicts=2)
    bus.publish("scheduler:stop", reason="no_more_work")

    entries = store.search_events(filters={"run_id": "run-7"})
    assert [entry.event_type for entry in entries] == ["merge:completed", "scheduler:stop"]
    assert entries[0].metadata["conflicts"] == 2
    assert entries[1].session_id == RUN_SESSION


def test_unavailable_client_raises(tmp_path: Path) -> None:
    def broken_factory():
        raise ChromaUnavailableError("chromadb missing")

    store = ChromaStore(tmp_path, client_factory=broken_factory)

    with pytest.raises(ChromaUnavailableError):
        store.ping()
