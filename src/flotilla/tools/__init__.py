"""Control-surface tools for a running scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..scheduler import Scheduler, SchedulerStateError
from ..storage import ChromaStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    run_status: Any
    pause_run: Any
    resume_run: Any
    stop_run: Any
    recent_events: Any


def register_tools(
    server: FastMCP,
    *,
    scheduler: Scheduler,
    journal_store: ChromaStore | None = None,
) -> ToolHandles:
    """Register the run control tools on the server."""

    def _require_journal() -> ChromaStore:
        if journal_store is None:
            raise RuntimeError("Event journal is unavailable; set FLOTILLA_JOURNAL_ENABLED and install chromadb")
        return journal_store

    def _run_status(context: Context | None = None) -> dict[str, Any]:
        """Return scheduler state, counters and session status counts."""

        status = scheduler.status()
        _emit_log(context, "debug", "Run status requested", extra={"state": status["state"]})
        return status

    def _pause_run(context: Context | None = None) -> dict[str, Any]:
        try:
            scheduler.pause()
        except SchedulerStateError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(context, "info", "Run paused via control surface")
        return {"state": scheduler.state.value}

    def _resume_run(context: Context | None = None) -> dict[str, Any]:
        try:
            scheduler.resume()
        except SchedulerStateError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(context, "info", "Run resumed via control surface")
        return {"state": scheduler.state.value}

    def _stop_run(reason: str = "requested", context: Context | None = None) -> dict[str, Any]:
        scheduler.request_stop(reason)
        _emit_log(context, "info", "Run stop requested via control surface", extra={"reason": reason})
        return {"state": scheduler.state.value, "reason": reason}

    def _recent_events(
        event_type: str | None = None,
        session_id: str | None = None,
        limit: int = 20,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List journaled events of the current run, newest last."""

        store = _require_journal()
        filters: dict[str, Any] = {"run_id": scheduler.run_id}
        if event_type:
            filters["event_type"] = event_type
        if session_id:
            filters["session_id"] = session_id
        entries = store.search_events(filters=filters)[-limit:]
        _emit_log(context, "debug", "Recent events", extra={"results": len(entries)})
        return [
            {
                "event_id": entry.id,
                "session_id": entry.session_id,
                "event_type": entry.event_type,
                "timestamp": entry.timestamp.isoformat(),
                "excerpt": entry.document[:200],
            }
            for entry in entries
        ]

    tool_status = server.tool(
        name="run_status",
        description="Report scheduler state, elapsed time, merge and rate-limit counters and session statuses.",
    )(_run_status)

    tool_pause = server.tool(
        name="pause_run",
        description="Pause dispatch of new assignments. In-flight workers keep running.",
    )(_pause_run)

    tool_resume = server.tool(
        name="resume_run",
        description="Resume a paused run.",
    )(_resume_run)

    tool_stop = server.tool(
        name="stop_run",
        description=(
            "Stop the run. No new assignments are dispatched and in-flight workers are "
            "given the shutdown timeout to finish before their results are merged."
        ),
    )(_stop_run)

    tool_events = server.tool(
        name="recent_events",
        description="List journaled run events, optionally filtered by event type or session.",
    )(_recent_events)

    return ToolHandles(
        run_status=tool_status,
        pause_run=tool_pause,
        resume_run=tool_resume,
        stop_run=tool_stop,
        recent_events=tool_events,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP context logger when one is available."""

    payload = extra or {}
    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return
    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
