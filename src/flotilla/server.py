"""FastMCP control surface and process entry point."""

import asyncio
import contextlib
import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastmcp import Context, FastMCP

from . import __version__
from .app import Runtime, build_runtime
from .config import get_settings
from .executor import CodexNotFoundError
from .git import CircuitOpenError
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the Flotilla process."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(runtime: Runtime) -> FastMCP:
    """Instantiate the FastMCP server exposing run status and controls."""

    settings = runtime.settings
    scheduler = runtime.scheduler
    journal_store = runtime.journal.store if runtime.journal is not None else None

    server = FastMCP(
        name="Flotilla",
        version=__version__,
        instructions=(
            "Flotilla runs parallel Codex workers against one git repository and merges "
            "their work continuously. Use the tools to inspect, pause, resume or stop the run."
        ),
    )
    handles = register_tools(server, scheduler=scheduler, journal_store=journal_store)

    @server.resource(
        "resource://flotilla/status",
        name="flotilla_status",
        title="Flotilla Run Status",
        description="Scheduler state, integration counters and session status for the current run.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing the run."""

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "repository": {
                "path": str(settings.repo_path),
                "integration_branch": settings.integration_branch,
                "push_enabled": settings.push_enabled,
            },
            "profiles": sorted(profile.id for profile in runtime.profiles.values()),
            "journal": {
                "enabled": journal_store is not None,
                "path": str(settings.chroma_persist_path),
            },
            "run": scheduler.status(),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload, default=str)

    setattr(server, "runtime", runtime)
    setattr(server, "tool_handles", handles)
    return server


async def serve(runtime: Runtime, server: FastMCP) -> int:
    """Run the scheduler and the control surface until the run ends."""

    server_task = asyncio.create_task(server.run_async())
    exit_code = 0
    try:
        stats = await runtime.scheduler.run()
        logger.info("Run finished", extra={"stats": stats.model_dump()})
    except CircuitOpenError:
        exit_code = 2
    finally:
        server_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await server_task
    return exit_code


def main() -> int:
    """Entry point for running Flotilla via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        runtime = build_runtime(settings)
    except CodexNotFoundError as exc:
        logger.error("Codex CLI unavailable", extra={"error": str(exc)})
        return 1

    server = create_server(runtime)
    logger.info(
        "Launching Flotilla",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "run_id": runtime.scheduler.run_id,
            "workers": settings.worker_count,
            "journal": runtime.journal is not None,
        },
    )
    try:
        return asyncio.run(serve(runtime, server))
    except KeyboardInterrupt:
        logger.warning("Interrupted; state saved at last checkpoint")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
