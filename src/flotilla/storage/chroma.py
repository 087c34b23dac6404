"""Chroma-backed journal of run events."""

from __future__ import annotations

import json
import logging
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from ..events import RunEvent

logger = logging.getLogger(__name__)

RUN_SESSION = "run"


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """The part of the Chroma collection API the journal relies on."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class JournalEntry:
    id: str
    run_id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    @property
    def data(self) -> dict[str, Any]:
        try:
            payload = json.loads(self.document)
        except json.JSONDecodeError:
            return {"text": self.document}
        return payload if isinstance(payload, dict) else {"value": payload}


def _scalar_metadata(data: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata only accepts scalars.
    return {
        key: value
        for key, value in data.items()
        if isinstance(value, (str, int, float, bool)) and not key.startswith("_")
    }


class ChromaStore:
    """Persist run events in a ChromaDB collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "flotilla_runs",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install flotilla with the persistence extra"
            ) from exc

        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        run_id: str,
        session_id: str | None,
        event_type: str,
        body: Any,
        timestamp: datetime | None = None,
    ) -> JournalEntry:
        collection = self._ensure_collection()
        session_key = session_id or RUN_SESSION
        sequence = self._counters[run_id] = self._counters[run_id] + 1
        when = timestamp or self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        metadata = {
            **(_scalar_metadata(body) if isinstance(body, dict) else {}),
            "run_id": run_id,
            "session_id": session_key,
            "event_type": event_type,
            "timestamp": when.isoformat(),
            "sequence": sequence,
        }
        entry_id = f"{run_id}:{sequence}:{uuid.uuid4().hex[:8]}"
        collection.add(documents=[document], metadatas=[metadata], ids=[entry_id])
        return JournalEntry(
            id=entry_id,
            run_id=run_id,
            session_id=session_key,
            event_type=event_type,
            document=document,
            metadata=metadata,
            timestamp=when,
        )

    def _convert_result(self, result: dict[str, list[Any]]) -> list[JournalEntry]:
        entries: list[JournalEntry] = []
        for entry_id, document, metadata in zip(
            result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
        ):
            timestamp_raw = metadata.get("timestamp")
            entries.append(
                JournalEntry(
                    id=entry_id,
                    run_id=metadata.get("run_id", ""),
                    session_id=metadata.get("session_id", RUN_SESSION),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=(
                        datetime.fromisoformat(timestamp_raw)
                        if isinstance(timestamp_raw, str)
                        else self._clock()
                    ),
                )
            )
        entries.sort(key=lambda entry: (entry.run_id, entry.metadata.get("sequence", 0)))
        return entries

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[JournalEntry]:
        collection = self._ensure_collection()
        where = filters
        if filters and len(filters) > 1:
            where = {"$and": [{key: value} for key, value in filters.items()]}
        entries = self._convert_result(collection.get(where=where, limit=None if query else limit))
        if query:
            needle = query.lower()
            entries = [
                entry
                for entry in entries
                if needle in entry.document.lower()
                or any(needle in str(value).lower() for value in entry.metadata.values())
            ]
        return entries[:limit] if limit else entries

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[JournalEntry]:
        return self.search_events(filters={"session_id": session_id}, limit=limit)

    def events_of_type(self, event_type: str, *, run_id: str | None = None) -> list[JournalEntry]:
        filters: dict[str, Any] = {"event_type": event_type}
        if run_id:
            filters["run_id"] = run_id
        return self.search_events(filters=filters)

    def summarize(self, run_id: str | None = None) -> dict[str, Any]:
        """Count journal entries per event type, optionally for one run."""

        entries = self.search_events(filters={"run_id": run_id} if run_id else None)
        counts = Counter(entry.event_type for entry in entries)
        runs = sorted({entry.run_id for entry in entries})
        return {
            "runs": runs,
            "events": len(entries),
            "by_type": dict(sorted(counts.items())),
            "merges": counts.get("merge:completed", 0),
            "conflict_merges": counts.get("merge:conflict", 0),
            "rate_limits": counts.get("task:rate_limited", 0),
            "failures": counts.get("task:failed", 0),
        }


class EventJournal:
    """Event bus subscriber writing every event to a :class:`ChromaStore`.

    Progress events are skipped by default; they are numerous and already
    summarized in session metrics.
    """

    def __init__(
        self,
        store: ChromaStore,
        run_id: str,
        *,
        skip_types: Iterable[str] = ("progress",),
    ) -> None:
        self._store = store
        self._run_id = run_id
        self._skip = frozenset(skip_types)

    @property
    def store(self) -> ChromaStore:
        return self._store

    def __call__(self, event: RunEvent) -> None:
        if event.type in self._skip:
            return
        self._store.record_event(
            run_id=self._run_id,
            session_id=event.session_id,
            event_type=event.type,
            body=event.data,
            timestamp=datetime.fromtimestamp(event.timestamp, timezone.utc),
        )


__all__ = [
    "ChromaStore",
    "ChromaUnavailableError",
    "EventJournal",
    "JournalEntry",
    "RUN_SESSION",
]
