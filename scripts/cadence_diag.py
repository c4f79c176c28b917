"""Cadence diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json

from cadence.config import CadenceSettings
from cadence.errors import OrchestrationError
from cadence.sessions import SessionQuery, SessionRegistry
from cadence.storage import FileStore, RecordKind
from cadence.tasks import TaskManager, TaskQuery


def load_store(settings: CadenceSettings) -> FileStore:
    state_dir = settings.state_dir.expanduser()
    if not state_dir.is_dir():
        print(f"State directory not found: {state_dir}")
        raise SystemExit(1)
    return FileStore.from_settings(settings)


def _run(coro):
    try:
        return asyncio.run(coro)
    except OrchestrationError as exc:
        print(f"Error ({exc.code}): {exc}")
        raise SystemExit(1)


def cmd_tasks(args: argparse.Namespace) -> None:
    settings = CadenceSettings()
    store = load_store(settings)
    query = TaskQuery(orchestration_id=args.orchestration_id, status=args.status)
    tasks = _run(TaskManager(store).query_tasks(query))
    if args.json:
        print(json.dumps([task.model_dump(mode="json") for task in tasks], indent=2))
    else:
        for task in tasks:
            print(f"{task.id} [{task.status.value}] {task.name} ({task.orchestration_id})")


def cmd_sessions(args: argparse.Namespace) -> None:
    settings = CadenceSettings()
    store = load_store(settings)
    query = SessionQuery(orchestration_id=args.orchestration_id, state=args.state)
    sessions = _run(SessionRegistry(store).query_sessions(query))
    payload = [
        {
            "session_id": session.id,
            "orchestration_id": session.orchestration_id,
            "type": session.type.value,
            "state": session.state.value,
            "parent_session_id": session.parent_session_id,
            "children": list(session.child_session_ids),
            "last_activity_at": session.last_activity_at.isoformat(),
        }
        for session in sessions
    ]
    print(json.dumps(payload, indent=2))


def cmd_validate(args: argparse.Namespace) -> None:
    settings = CadenceSettings()
    store = load_store(settings)

    async def _collect():
        validation = await TaskManager(store).validate_dependencies(args.orchestration_id)
        issues = await SessionRegistry(store).find_hierarchy_inconsistencies(args.orchestration_id)
        return validation, issues

    validation, issues = _run(_collect())
    payload = {
        "dependencies": validation.to_dict(),
        "hierarchy_issues": [issue.to_dict() for issue in issues],
    }
    print(json.dumps(payload, indent=2))
    if not validation.is_valid or issues:
        raise SystemExit(1)


def cmd_stats(args: argparse.Namespace) -> None:
    settings = CadenceSettings()
    store = load_store(settings)
    print(json.dumps(_run(store.storage_stats()), indent=2))


def cmd_backups(args: argparse.Namespace) -> None:
    settings = CadenceSettings()
    store = load_store(settings)
    kind = RecordKind(args.kind) if args.kind else None
    records = _run(store.list_backups(kind, args.record_id))
    if args.limit is not None and args.limit > 0:
        records = records[: args.limit]
    print(json.dumps([record.to_dict() for record in records], indent=2))


def cmd_recover(args: argparse.Namespace) -> None:
    settings = CadenceSettings()
    store = load_store(settings)
    result = _run(
        store.recover_record(RecordKind(args.kind), args.record_id, write_back=not args.dry_run)
    )
    print(json.dumps(result.to_dict(), indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cadence diagnostics")
    sub = parser.add_subparsers(dest="cmd")
    kinds = [kind.value for kind in RecordKind]

    p_tasks = sub.add_parser("tasks", help="List stored tasks")
    p_tasks.add_argument("--orchestration-id")
    p_tasks.add_argument("--status", action="append", help="Filter by status (repeatable)")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_sessions = sub.add_parser("sessions", help="List stored sessions")
    p_sessions.add_argument("--orchestration-id")
    p_sessions.add_argument("--state", action="append", help="Filter by state (repeatable)")
    p_sessions.set_defaults(func=cmd_sessions)

    p_validate = sub.add_parser(
        "validate",
        help="Check task dependencies and session links; exits 1 when problems are found",
    )
    p_validate.add_argument("orchestration_id")
    p_validate.set_defaults(func=cmd_validate)

    p_stats = sub.add_parser("stats", help="Show record counts and disk usage")
    p_stats.set_defaults(func=cmd_stats)

    p_backups = sub.add_parser("backups", help="List backups, newest first")
    p_backups.add_argument("--kind", choices=kinds)
    p_backups.add_argument("--record-id")
    p_backups.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the newest N backups",
    )
    p_backups.set_defaults(func=cmd_backups)

    p_recover = sub.add_parser("recover", help="Repair or reconstruct a corrupted record")
    p_recover.add_argument("kind", choices=kinds)
    p_recover.add_argument("record_id")
    p_recover.add_argument(
        "--dry-run",
        action="store_true",
        help="Report the recovered record without writing it back",
    )
    p_recover.set_defaults(func=cmd_recover)

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
