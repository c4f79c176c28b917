"""Tool registration for the Cadence MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..config import CadenceSettings
from ..manifests import ManifestLoader, TaskManifest
from ..sessions import SessionRegistry
from ..sessions.models import SessionContext, SessionMetadata
from ..storage import FileStore, RecordKind
from ..tasks import TaskManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    create_task: Any
    update_task: Any
    next_task: Any
    check_dependencies: Any
    validate_dependencies: Any
    dependency_graph: Any
    task_statistics: Any
    import_manifest: Any
    reset_orchestration: Any
    create_session: Any
    update_session_state: Any
    session_context: Any
    related_sessions: Any
    session_history: Any
    cleanup_sessions: Any
    archive_sessions: Any
    recover_record: Any


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return
        ctx_log = getattr(context, "log", None)
        if callable(ctx_log):  # pragma: no cover - depends on FastMCP internals
            try:
                ctx_log(level.upper(), message, extra=payload)
                return
            except TypeError:
                pass

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


def register_tools(
    server: FastMCP,
    *,
    tasks: TaskManager,
    sessions: SessionRegistry,
    store: FileStore,
    manifests: ManifestLoader,
    settings: CadenceSettings,
) -> ToolHandles:
    """Register Cadence's MCP tools on the server."""

    # --- tasks ------------------------------------------------------------

    async def _create_task(
        orchestration_id: str,
        name: str,
        description: str = "",
        priority: str = "medium",
        dependencies: list[str | dict[str, Any]] | None = None,
        acceptance_criteria: list[str | dict[str, Any]] | None = None,
        estimation: dict[str, Any] | None = None,
        parent_task_id: str | None = None,
        plan_id: str | None = None,
        assignee: str | None = None,
        tags: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a not-started task in an orchestration."""

        task = await tasks.create_task(
            {
                "orchestration_id": orchestration_id,
                "name": name,
                "description": description,
                "priority": priority,
                "dependencies": dependencies or [],
                "acceptance_criteria": acceptance_criteria or [],
                "estimation": estimation,
                "parent_task_id": parent_task_id,
                "plan_id": plan_id,
                "assignee": assignee,
                "tags": tags or [],
            }
        )
        _emit_log(
            context,
            "info",
            "Created task",
            extra={"task_id": task.id, "orchestration_id": orchestration_id},
        )
        return task.model_dump(mode="json")

    async def _update_task(
        task_id: str,
        changes: dict[str, Any],
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Apply a partial update; status changes follow the task lifecycle."""

        task = await tasks.update_task(task_id, changes)
        _emit_log(
            context,
            "info",
            "Updated task",
            extra={"task_id": task_id, "fields": sorted(changes), "status": task.status.value},
        )
        return task.model_dump(mode="json")

    async def _next_task(orchestration_id: str, context: Context | None = None) -> dict[str, Any]:
        """Pick the next not-started task and report whether its dependencies hold."""

        task = await tasks.get_next_task(orchestration_id)
        if task is None:
            _emit_log(context, "debug", "No task ready", extra={"orchestration_id": orchestration_id})
            return {"orchestration_id": orchestration_id, "task": None, "dependencies": None}

        check = await tasks.check_dependencies(task.id)
        _emit_log(
            context,
            "debug",
            "Selected next task",
            extra={
                "orchestration_id": orchestration_id,
                "task_id": task.id,
                "ready": check.all_satisfied,
            },
        )
        return {
            "orchestration_id": orchestration_id,
            "task": task.model_dump(mode="json"),
            "dependencies": check.to_dict(),
        }

    async def _check_dependencies(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Report which dependencies of a task are satisfied."""

        check = await tasks.check_dependencies(task_id)
        _emit_log(
            context,
            "debug",
            "Checked dependencies",
            extra={"task_id": task_id, "all_satisfied": check.all_satisfied},
        )
        return check.to_dict()

    async def _validate_dependencies(
        orchestration_id: str, context: Context | None = None
    ) -> dict[str, Any]:
        """Find cycles, orphaned tasks and dangling dependency references."""

        validation = await tasks.validate_dependencies(orchestration_id)
        _emit_log(
            context,
            "info" if validation.is_valid else "warning",
            "Validated dependencies",
            extra={
                "orchestration_id": orchestration_id,
                "is_valid": validation.is_valid,
                "cycles": len(validation.cycles),
            },
        )
        return validation.to_dict()

    async def _dependency_graph(orchestration_id: str, context: Context | None = None) -> dict[str, Any]:
        """Return the layered dependency graph and a valid execution order."""

        view = await tasks.compute_levels(orchestration_id)
        order = await tasks.compute_execution_order(orchestration_id)
        payload = view.to_dict()
        payload["execution_order"] = [task.id for task in order]
        _emit_log(
            context,
            "debug",
            "Built dependency graph",
            extra={"orchestration_id": orchestration_id, "nodes": len(view.nodes)},
        )
        return payload

    async def _task_statistics(orchestration_id: str, context: Context | None = None) -> dict[str, Any]:
        """Counts by status and priority, completion and estimated hours."""

        stats = await tasks.get_task_statistics(orchestration_id)
        _emit_log(
            context,
            "debug",
            "Computed task statistics",
            extra={"orchestration_id": orchestration_id, "total": stats.total},
        )
        return stats.to_dict()

    async def _import_manifest(
        manifest_name: str | None = None,
        manifest: dict[str, Any] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create tasks from a YAML manifest on disk or an inline manifest document."""

        if (manifest_name is None) == (manifest is None):
            raise ValueError("Provide exactly one of 'manifest_name' or 'manifest'")

        document: TaskManifest | dict[str, Any]
        if manifest_name is not None:
            document = manifests.get(manifest_name)
        else:
            document = dict(manifest or {})
            document.setdefault("name", "inline")

        result = await tasks.import_manifest(document)
        _emit_log(
            context,
            "info",
            "Imported manifest",
            extra={
                "manifest": manifest_name or "inline",
                "orchestration_id": result.orchestration_id,
                "task_count": len(result.task_ids),
            },
        )
        return result.to_dict()

    async def _reset_orchestration(orchestration_id: str, context: Context | None = None) -> dict[str, Any]:
        """Back up and delete every task and plan of an orchestration."""

        report = await tasks.reset_orchestration(orchestration_id)
        _emit_log(
            context,
            "warning",
            "Reset orchestration",
            extra={"orchestration_id": orchestration_id, "removed": report.removed},
        )
        return report.to_dict()

    tool_create_task = server.tool(
        name="create_task",
        description=(
            "Create a task in an orchestration. Dependencies may be task ids or "
            "{task_id, type} objects; acceptance criteria may be plain strings."
        ),
    )(_create_task)

    tool_update_task = server.tool(
        name="update_task",
        description=(
            "Apply a partial update to a task. Status changes must follow the lifecycle: "
            "not_started -> in_progress -> completed, with blocked, failed and cancelled detours."
        ),
    )(_update_task)

    tool_next_task = server.tool(
        name="next_task",
        description="Return the highest-priority not-started task and whether its dependencies are satisfied.",
    )(_next_task)

    tool_check_dependencies = server.tool(
        name="check_dependencies",
        description="List satisfied and unsatisfied dependencies of a task.",
    )(_check_dependencies)

    tool_validate_dependencies = server.tool(
        name="validate_dependencies",
        description="Detect dependency cycles, orphaned tasks and references to missing tasks.",
    )(_validate_dependencies)

    tool_dependency_graph = server.tool(
        name="dependency_graph",
        description="Return graph nodes with levels, edges and a topological execution order.",
    )(_dependency_graph)

    tool_task_statistics = server.tool(
        name="task_statistics",
        description="Summarize task counts, completion percentage and estimated hours.",
    )(_task_statistics)

    tool_import_manifest = server.tool(
        name="import_manifest",
        description=(
            "Import a task manifest by name from the configured manifest paths, or pass an "
            "inline manifest with orchestration_id, optional plan and tasks."
        ),
    )(_import_manifest)

    tool_reset_orchestration = server.tool(
        name="reset_orchestration",
        description="Back up and delete all tasks and plans of an orchestration.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Destructive; records are recoverable only from backups",
            }
        },
    )(_reset_orchestration)

    # --- sessions ---------------------------------------------------------

    async def _create_session(
        orchestration_id: str,
        session_type: Literal["planning", "task", "verification", "interactive"],
        task_id: str | None = None,
        parent_session_id: str | None = None,
        name: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
        focus: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create an active session, optionally as the child of another session."""

        session = await sessions.create_session(
            {
                "orchestration_id": orchestration_id,
                "type": session_type,
                "task_id": task_id,
                "parent_session_id": parent_session_id,
                "context": SessionContext(current_focus=focus or ""),
                "metadata": SessionMetadata(name=name, description=description, tags=tags or []),
            }
        )
        _emit_log(
            context,
            "info",
            "Created session",
            extra={"session_id": session.id, "parent_id": parent_session_id},
        )
        return {
            "session_id": session.id,
            "orchestration_id": session.orchestration_id,
            "type": session.type.value,
            "state": session.state.value,
            "parent_session_id": session.parent_session_id,
            "timestamp": session.timestamp.isoformat(),
        }

    async def _update_session_state(
        session_id: str,
        state: Literal["active", "suspended", "completed", "failed"],
        reason: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Move a session to a new lifecycle state."""

        session = await sessions.update_state(session_id, state, reason)
        _emit_log(
            context,
            "info",
            "Updated session state",
            extra={"session_id": session_id, "state": session.state.value},
        )
        return {
            "session_id": session.id,
            "state": session.state.value,
            "completed_at": session.completed_at.isoformat() if session.completed_at else None,
            "failure_reason": session.failure_reason,
            "last_activity_at": session.last_activity_at.isoformat(),
        }

    async def _session_context(
        session_id: str,
        hierarchical: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Summarize a session's context, optionally with its parent and children."""

        if hierarchical:
            payload = (await sessions.get_hierarchical_context(session_id)).to_dict()
        else:
            payload = (await sessions.get_context_summary(session_id)).to_dict()
        breadcrumbs = await sessions.get_session_breadcrumbs(session_id)
        payload["breadcrumbs"] = [crumb.to_dict() for crumb in breadcrumbs]
        _emit_log(
            context,
            "debug",
            "Summarized session context",
            extra={"session_id": session_id, "hierarchical": hierarchical},
        )
        return payload

    async def _related_sessions(session_id: str, context: Context | None = None) -> dict[str, Any]:
        """Parent, children, siblings and time-adjacent sessions of one session."""

        related = await sessions.find_related_sessions(session_id)
        if related.inconsistencies:
            _emit_log(
                context,
                "warning",
                "Session hierarchy is inconsistent",
                extra={"session_id": session_id, "issues": len(related.inconsistencies)},
            )
        return related.to_dict()

    async def _session_history(orchestration_id: str, context: Context | None = None) -> dict[str, Any]:
        """Timeline and hierarchy of an orchestration's sessions with state counts."""

        history = await sessions.get_session_navigation_history(orchestration_id)
        summary = await sessions.get_orchestration_summary(orchestration_id)
        payload = history.to_dict()
        payload["summary"] = summary.to_dict()
        _emit_log(
            context,
            "debug",
            "Built session history",
            extra={"orchestration_id": orchestration_id, "sessions": summary.total_sessions},
        )
        return payload

    async def _cleanup_sessions(context: Context | None = None) -> dict[str, Any]:
        """Back up and delete all completed or failed sessions."""

        report = await sessions.cleanup_sessions()
        _emit_log(context, "info", "Cleaned up sessions", extra={"removed": report.removed})
        return report.to_dict()

    async def _archive_sessions(
        older_than_days: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Back up and delete finished sessions idle for longer than the cutoff."""

        days = settings.archive_after_days if older_than_days is None else older_than_days
        report = await sessions.archive_sessions(days)
        _emit_log(
            context,
            "info",
            "Archived sessions",
            extra={"older_than_days": days, "removed": report.removed},
        )
        return {**report.to_dict(), "older_than_days": days}

    async def _recover_record(
        kind: Literal["session", "task", "plan"],
        record_id: str,
        write_back: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Repair or reconstruct a record whose file is corrupted."""

        result = await store.recover_record(RecordKind(kind), record_id, write_back=write_back)
        _emit_log(
            context,
            "warning" if result.reconstructed else "info",
            "Recovered record",
            extra={
                "kind": kind,
                "id": record_id,
                "reconstructed": result.reconstructed,
                "repaired": result.repaired,
            },
        )
        return result.to_dict()

    tool_create_session = server.tool(
        name="create_session",
        description=(
            "Create a planning, task, verification or interactive session. A child session "
            "must belong to its parent's orchestration."
        ),
    )(_create_session)

    tool_update_session_state = server.tool(
        name="update_session_state",
        description=(
            "Change a session's state. Active and suspended sessions may complete or fail; "
            "failed sessions may be reactivated; completed is terminal."
        ),
    )(_update_session_state)

    tool_session_context = server.tool(
        name="session_context",
        description="Return a compact summary of a session's focus, decisions and artifacts.",
    )(_session_context)

    tool_related_sessions = server.tool(
        name="related_sessions",
        description="List the parent, children, siblings, predecessors and successors of a session.",
    )(_related_sessions)

    tool_session_history = server.tool(
        name="session_history",
        description="Return the session timeline and hierarchy of an orchestration.",
    )(_session_history)

    tool_cleanup_sessions = server.tool(
        name="cleanup_sessions",
        description="Back up and delete every completed or failed session.",
        annotations={"safety": {"level": "caution", "notes": "Removes finished sessions"}},
    )(_cleanup_sessions)

    tool_archive_sessions = server.tool(
        name="archive_sessions",
        description=(
            "Back up and delete completed or failed sessions older than the given number of days "
            "(defaults to CADENCE_ARCHIVE_AFTER_DAYS)."
        ),
        annotations={"safety": {"level": "caution", "notes": "Removes finished sessions"}},
    )(_archive_sessions)

    tool_recover_record = server.tool(
        name="recover_record",
        description=(
            "Back up a corrupted session, task or plan file, then repair or reconstruct it. "
            "Reconstructed records restart in a safe lifecycle state."
        ),
    )(_recover_record)

    return ToolHandles(
        create_task=tool_create_task,
        update_task=tool_update_task,
        next_task=tool_next_task,
        check_dependencies=tool_check_dependencies,
        validate_dependencies=tool_validate_dependencies,
        dependency_graph=tool_dependency_graph,
        task_statistics=tool_task_statistics,
        import_manifest=tool_import_manifest,
        reset_orchestration=tool_reset_orchestration,
        create_session=tool_create_session,
        update_session_state=tool_update_session_state,
        session_context=tool_session_context,
        related_sessions=tool_related_sessions,
        session_history=tool_session_history,
        cleanup_sessions=tool_cleanup_sessions,
        archive_sessions=tool_archive_sessions,
        recover_record=tool_recover_record,
    )


__all__ = ["register_tools", "ToolHandles"]
