"""Flotilla diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from typing import Any

from flotilla.config import FlotillaSettings
from flotilla.sessions import StateStore
from flotilla.storage import ChromaStore, ChromaUnavailableError


def load_store(settings: FlotillaSettings) -> ChromaStore:
    store = ChromaStore(settings.chroma_persist_path)
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def _entry_payload(entry) -> dict[str, Any]:
    return {
        "event_id": entry.id,
        "run_id": entry.metadata.get("run_id"),
        "session_id": entry.metadata.get("session_id"),
        "event_type": entry.metadata.get("event_type"),
        "timestamp": entry.timestamp.isoformat(),
        "excerpt": entry.document[:200],
    }


def _filters(args: argparse.Namespace, **extra: Any) -> dict[str, Any] | None:
    filters = dict(extra)
    if getattr(args, "run_id", None):
        filters["run_id"] = args.run_id
    return filters or None


def cmd_events(args: argparse.Namespace) -> None:
    store = load_store(FlotillaSettings())
    filters = _filters(args) or {}
    if args.type:
        filters["event_type"] = args.type
    if args.session:
        filters["session_id"] = args.session
    entries = store.search_events(args.query, filters=filters or None)
    if args.limit is not None and args.limit > 0:
        entries = entries[-args.limit :]
    print(json.dumps([_entry_payload(entry) for entry in entries], indent=2))


def cmd_merges(args: argparse.Namespace) -> None:
    store = load_store(FlotillaSettings())
    completed = store.search_events(filters=_filters(args, event_type="merge:completed"))
    conflicted = store.search_events(filters=_filters(args, event_type="merge:conflict"))
    failed = store.search_events(filters=_filters(args, event_type="merge:failed"))

    per_session: dict[str, int] = {}
    for entry in completed:
        session = entry.metadata.get("session_id", "unknown")
        per_session[session] = per_session.get(session, 0) + 1

    payload = {
        "merges": len(completed),
        "conflict_merges": len(conflicted),
        "conflicted_files": sum(int(entry.metadata.get("conflicts", 0) or 0) for entry in completed),
        "failures": len(failed),
        "by_session": per_session,
    }
    print(json.dumps(payload, indent=2))


def cmd_ratelimits(args: argparse.Namespace) -> None:
    store = load_store(FlotillaSettings())
    throttled = store.search_events(filters=_filters(args, event_type="task:rate_limited"))
    rotated = store.search_events(filters=_filters(args, event_type="ratelimit:rotated"))
    exhausted = store.search_events(filters=_filters(args, event_type="ratelimit:exhausted"))

    by_credential: dict[str, int] = {}
    for entry in throttled:
        credential = entry.metadata.get("credential", "unknown")
        by_credential[credential] = by_credential.get(credential, 0) + 1

    payload = {
        "rate_limited_tasks": len(throttled),
        "rotations": len(rotated),
        "pool_exhausted": len(exhausted),
        "by_credential": by_credential,
    }
    print(json.dumps(payload, indent=2))


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = FlotillaSettings()
    state = StateStore(settings.state_path).load()
    if state is None:
        print(f"No saved state at {settings.state_path}")
        raise SystemExit(1)
    sessions = [record.model_dump(mode="json") for record in state.sessions]
    if args.role:
        sessions = [record for record in sessions if record["role"] == args.role]
    print(json.dumps({"run_id": state.run_id, "iteration": state.iteration, "sessions": sessions}, indent=2))


def cmd_summary(args: argparse.Namespace) -> None:
    store = load_store(FlotillaSettings())
    print(json.dumps(store.summarize(args.run_id), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flotilla diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_events = sub.add_parser("events", help="List journaled events")
    p_events.add_argument("--run-id")
    p_events.add_argument("--type", help="Event type, e.g. merge:completed")
    p_events.add_argument("--session")
    p_events.add_argument("--query", help="Keyword to search for in event bodies")
    p_events.add_argument("--limit", type=int, default=None, help="Show only the latest N events")
    p_events.set_defaults(func=cmd_events)

    p_merges = sub.add_parser("merges", help="Merge and conflict counts")
    p_merges.add_argument("--run-id")
    p_merges.set_defaults(func=cmd_merges)

    p_ratelimits = sub.add_parser("ratelimits", help="Rate-limit and credential rotation counts")
    p_ratelimits.add_argument("--run-id")
    p_ratelimits.set_defaults(func=cmd_ratelimits)

    p_sessions = sub.add_parser("sessions", help="Sessions from the saved scheduler state")
    p_sessions.add_argument("--role", choices=["lead", "director", "cluster_lead", "worker"])
    p_sessions.set_defaults(func=cmd_sessions)

    p_summary = sub.add_parser("summary", help="Event counts per type")
    p_summary.add_argument("--run-id")
    p_summary.set_defaults(func=cmd_summary)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
