"""FastMCP server bootstrap for Cadence."""

import asyncio
import json
import logging
from dataclasses import fields
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import CadenceSettings, get_settings
from .errors import OrchestrationError
from .manifests import ManifestLoadError, ManifestLoader
from .sessions import SessionRegistry
from .storage import FileStore
from .tasks import TaskManager
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Cadence server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[CadenceSettings] = None,
    *,
    store: FileStore | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server, its engines and the status resource."""

    settings = settings or get_settings()
    store = store or FileStore.from_settings(settings)
    _run_sync(store.initialize())

    tasks = TaskManager(store)
    sessions = SessionRegistry(store)
    manifest_loader = ManifestLoader(settings.manifest_paths)

    # Interrupted parent/child writes leave one-sided links; surface them at startup.
    try:
        startup_issues = [issue.to_dict() for issue in _run_sync(sessions.find_hierarchy_inconsistencies())]
        startup_error: str | None = None
    except OrchestrationError as exc:
        startup_issues = []
        startup_error = str(exc)
    if startup_issues:
        logging.getLogger(__name__).warning(
            "Session hierarchy inconsistencies found at startup",
            extra={"count": len(startup_issues), "issues": startup_issues[:10]},
        )

    server = FastMCP(
        name="Cadence MCP",
        version=__version__,
        instructions=(
            "Cadence tracks tasks with dependencies, hierarchical work sessions and "
            "planning records for phased agent workflows. Every tool takes an "
            "orchestration id or a record id; records persist across restarts."
        ),
    )

    handles = register_tools(
        server,
        tasks=tasks,
        sessions=sessions,
        store=store,
        manifests=manifest_loader,
        settings=settings,
    )

    @server.resource(
        "resource://cadence/status",
        name="cadence_status",
        title="Cadence MCP Status",
        description="Provides storage statistics and startup health for the Cadence MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    async def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        try:
            storage = await store.storage_stats()
            storage_error: str | None = None
        except OrchestrationError as exc:
            storage = {}
            storage_error = str(exc)

        try:
            manifest_names = sorted(manifest_loader.load_all())
            manifest_error: str | None = None
        except ManifestLoadError as exc:
            manifest_names = []
            manifest_error = str(exc)

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "storage": {**storage, "error": storage_error},
            "manifests": {
                "paths": [str(path) for path in manifest_loader.search_paths],
                "names": manifest_names,
                "error": manifest_error,
            },
            "hierarchy": {
                "startup_issues": startup_issues,
                "startup_issue_count": len(startup_issues),
                "error": startup_error,
            },
            "tools": sorted(field.name for field in fields(handles)),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "store", store)
    setattr(server, "task_manager", tasks)
    setattr(server, "session_registry", sessions)
    setattr(server, "manifest_loader", manifest_loader)
    setattr(server, "startup_issues", startup_issues)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the Cadence MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching Cadence MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "state_dir": str(settings.state_dir),
            "startup_issues": len(getattr(server, "startup_issues", [])),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
