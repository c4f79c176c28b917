from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cadence.errors import (
    HierarchyError,
    NotFoundError,
    RecordValidationError,
    StateTransitionError,
    StorageError,
)
from cadence.sessions import SessionRegistry, SessionState, SessionType
from cadence.sessions.models import SESSION_TRANSITIONS, ThinkingState
from cadence.storage import FileStore, RecordKind
from cadence.storage.models import Session


class TickingClock:
    def __init__(self) -> None:
        self.current = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


def make_registry(tmp_path: Path) -> tuple[SessionRegistry, TickingClock]:
    clock = TickingClock()
    return SessionRegistry(FileStore(tmp_path / "state", clock=clock)), clock


def test_child_sessions_are_linked_both_ways(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        parent = await registry.create_session({"id": "plan-1", "orchestration_id": "o", "type": "planning"})
        child = await registry.create_session(
            {"id": "task-1", "orchestration_id": "o", "type": "task", "parent_session_id": parent.id}
        )
        hierarchy = await registry.get_session_hierarchy(parent.id)
        related = await registry.find_related_sessions(child.id)
        return child, hierarchy, related

    child, hierarchy, related = asyncio.run(scenario())

    assert child.state is SessionState.ACTIVE
    assert child.parent_session_id == "plan-1"
    assert [item.id for item in hierarchy.children] == ["task-1"]
    assert hierarchy.session.child_session_ids == ["task-1"]
    assert related.parent.id == "plan-1"
    assert related.siblings == []
    assert related.inconsistencies == []


def test_create_rejects_missing_parent_and_foreign_orchestration(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    with pytest.raises(NotFoundError):
        asyncio.run(
            registry.create_session(
                {"orchestration_id": "o", "type": "task", "parent_session_id": "nobody"}
            )
        )

    asyncio.run(registry.create_session({"id": "root", "orchestration_id": "o", "type": "planning"}))
    with pytest.raises(RecordValidationError):
        asyncio.run(
            registry.create_session(
                {"orchestration_id": "elsewhere", "type": "task", "parent_session_id": "root"}
            )
        )
    with pytest.raises(RecordValidationError):
        asyncio.run(registry.create_session({"id": "root", "orchestration_id": "o", "type": "task"}))


def test_failed_parent_write_reports_hierarchy_error_and_can_be_repaired(
    tmp_path: Path, monkeypatch
) -> None:
    registry, _ = make_registry(tmp_path)
    store = registry.store
    asyncio.run(registry.create_session({"id": "root", "orchestration_id": "o", "type": "planning"}))
    original_save = store.save

    async def failing_save(kind, record):
        if getattr(record, "id", None) == "root":
            raise StorageError("disk full")
        return await original_save(kind, record)

    monkeypatch.setattr(store, "save", failing_save)
    with pytest.raises(HierarchyError) as excinfo:
        asyncio.run(
            registry.create_session(
                {"id": "orphan", "orchestration_id": "o", "type": "task", "parent_session_id": "root"}
            )
        )
    monkeypatch.undo()

    assert excinfo.value.recoverable is True
    assert excinfo.value.child_id == "orphan"
    issues = asyncio.run(registry.find_hierarchy_inconsistencies("o"))
    assert [(issue.parent_id, issue.child_id, issue.problem) for issue in issues] == [
        ("root", "orphan", "child missing from parent listing")
    ]
    related = asyncio.run(registry.find_related_sessions("root"))
    assert [item.id for item in related.children] == ["orphan"]
    assert len(related.inconsistencies) == 1

    repaired = asyncio.run(registry.repair_hierarchy("o"))

    assert [issue.child_id for issue in repaired] == ["orphan"]
    assert asyncio.run(registry.require_session("root")).child_session_ids == ["orphan"]
    assert asyncio.run(registry.find_hierarchy_inconsistencies()) == []


def test_every_state_transition_follows_the_table(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)
    store = registry.store

    for index, (current, requested) in enumerate(itertools.product(SessionState, SessionState)):
        session_id = f"sess-{index}"
        asyncio.run(
            store.save(
                RecordKind.SESSION,
                Session(id=session_id, orchestration_id="o", type=SessionType.TASK, state=current),
            )
        )
        if requested is current or requested in SESSION_TRANSITIONS[current]:
            updated = asyncio.run(registry.update_state(session_id, requested))
            assert updated.state is requested
        else:
            with pytest.raises(StateTransitionError) as excinfo:
                asyncio.run(registry.update_state(session_id, requested))
            assert excinfo.value.requested == requested.value
            assert asyncio.run(registry.require_session(session_id)).state is current


def test_repeated_state_only_refreshes_activity(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "s", "orchestration_id": "o", "type": "task"})
        first = await registry.update_state("s", "failed", reason="tests broke")
        again = await registry.update_state("s", "failed", reason="something else")
        revived = await registry.update_state("s", "active")
        done = await registry.update_state("s", "completed")
        done_again = await registry.update_state("s", "completed")
        return first, again, revived, done, done_again

    first, again, revived, done, done_again = asyncio.run(scenario())

    assert again.failure_reason == "tests broke"
    assert again.last_activity_at > first.last_activity_at
    assert revived.failure_reason is None
    assert done.completed_at is not None
    assert done_again.completed_at == done.completed_at

    with pytest.raises(RecordValidationError):
        asyncio.run(registry.update_state("s", "paused"))
    with pytest.raises(NotFoundError):
        asyncio.run(registry.update_state("missing", "active"))


def test_failure_without_reason_is_unspecified(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "s", "orchestration_id": "o", "type": "verification"})
        return await registry.update_state("s", SessionState.FAILED)

    assert asyncio.run(scenario()).failure_reason == "unspecified"


def test_context_operations_accumulate_and_summarize(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "s", "orchestration_id": "o", "type": "interactive"})
        await registry.update_focus("s", "Design the cache layer")
        await registry.add_message("s", "What about eviction?")
        await registry.add_message("s", "LRU is fine.", role="assistant")
        artifact = await registry.add_artifact("s", "cache.md", type="document", content="draft")
        updated = await registry.update_artifact("s", artifact.id, content="final", metadata={"rev": 2})
        for index in range(7):
            await registry.add_decision("s", f"decision {index}", impact="low")
        await registry.set_variable("s", "budget", 3)
        await registry.update_metadata("s", name="Cache design", tags=["cache"], user_metadata={"team": "core"})
        summary = await registry.get_context_summary("s")
        budget = await registry.get_variable("s", "budget")
        fallback = await registry.get_variable("s", "absent", "none")
        session = await registry.require_session("s")
        return artifact, updated, summary, budget, fallback, session

    artifact, updated, summary, budget, fallback, session = asyncio.run(scenario())

    assert updated.id == artifact.id
    assert updated.content == "final"
    assert updated.metadata == {"rev": 2}
    assert summary.focus == "Design the cache layer"
    assert summary.key_decisions == [f"decision {index}" for index in range(2, 7)]
    assert summary.important_artifacts == ["cache.md"]
    assert summary.message_count == 2
    assert summary.decision_count == 7
    assert budget == 3
    assert fallback == "none"
    assert session.metadata.name == "Cache design"
    assert session.metadata.user_metadata == {"team": "core"}
    assert session.context.messages[1].role == "assistant"

    with pytest.raises(NotFoundError):
        asyncio.run(registry.update_artifact("s", "art-missing", content="x"))


def test_thinking_trace_lifecycle(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "s", "orchestration_id": "o", "type": "planning"})
        trace = await registry.start_thinking("s", {"topic": "schema"})
        first = await registry.add_thinking_step("s", "List the tables", total_steps=3)
        paused = await registry.pause_thinking("s")
        second = await registry.add_thinking_step("s", "Revise the list", is_revision=True, revises_step=1)
        completed = await registry.complete_thinking("s")
        return trace, first, paused, second, completed

    trace, first, paused, second, completed = asyncio.run(scenario())

    assert trace.total_steps == 1
    assert first.number == 1
    assert paused.state is ThinkingState.PAUSED
    assert second.number == 2
    assert second.revises_step == 1
    assert completed.state is ThinkingState.COMPLETED
    assert completed.total_steps == 3
    assert completed.current_step == 2
    assert completed.completed_at is not None

    with pytest.raises(StateTransitionError):
        asyncio.run(registry.add_thinking_step("s", "too late"))


def test_thinking_requires_a_started_trace(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)
    asyncio.run(registry.create_session({"id": "s", "orchestration_id": "o", "type": "planning"}))

    with pytest.raises(StateTransitionError):
        asyncio.run(registry.add_thinking_step("s", "no trace yet"))
    with pytest.raises(StateTransitionError):
        asyncio.run(registry.pause_thinking("s"))


def test_breadcrumbs_and_navigation_history(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session(
            {"id": "root", "orchestration_id": "o", "type": "planning", "metadata": {"name": "Kickoff"}}
        )
        await registry.create_session(
            {"id": "c1", "orchestration_id": "o", "type": "task", "parent_session_id": "root"}
        )
        await registry.create_session(
            {"id": "c2", "orchestration_id": "o", "type": "task", "parent_session_id": "root"}
        )
        await registry.create_session(
            {"id": "g1", "orchestration_id": "o", "type": "verification", "parent_session_id": "c1"}
        )
        await registry.update_focus("g1", "Check migrations")
        crumbs = await registry.get_session_breadcrumbs("g1")
        history = await registry.get_session_navigation_history("o")
        related = await registry.find_related_sessions("c1")
        context = await registry.get_hierarchical_context("root")
        return crumbs, history, related, context

    crumbs, history, related, context = asyncio.run(scenario())

    assert [crumb.session_id for crumb in crumbs] == ["root", "c1", "g1"]
    assert [crumb.name for crumb in crumbs] == ["Kickoff", "task session", "verification session"]
    assert crumbs[-1].focus == "Check migrations"
    assert [entry.session_id for entry in history.timeline] == ["root", "c1", "c2", "g1"]
    assert [(node.session_id, node.level) for node in history.hierarchy] == [
        ("root", 0),
        ("c1", 1),
        ("g1", 2),
        ("c2", 1),
    ]
    assert history.hierarchy[0].children == ["c1", "c2"]
    assert [item.id for item in related.siblings] == ["c2"]
    assert [item.id for item in related.children] == ["g1"]
    assert [summary.session_id for summary in context.child_contexts] == ["c1", "c2"]
    assert context.parent_context is None


def test_predecessors_and_successors_follow_completion_times(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "early", "orchestration_id": "o", "type": "planning"})
        await registry.update_state("early", "completed")
        await registry.create_session({"id": "late", "orchestration_id": "o", "type": "task"})
        return (
            await registry.find_related_sessions("early"),
            await registry.find_related_sessions("late"),
        )

    early, late = asyncio.run(scenario())

    assert [item.id for item in early.successors] == ["late"]
    assert early.predecessors == []
    assert [item.id for item in late.predecessors] == ["early"]
    assert late.successors == []


def test_orchestration_summary_counts_states_and_types(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "a", "orchestration_id": "o", "type": "planning"})
        await registry.create_session({"id": "b", "orchestration_id": "o", "type": "task"})
        await registry.create_session({"id": "c", "orchestration_id": "o", "type": "task"})
        await registry.create_session({"id": "x", "orchestration_id": "other", "type": "task"})
        await registry.update_state("b", "suspended")
        await registry.update_state("c", "completed")
        return await registry.get_orchestration_summary("o"), await registry.get_active_sessions("o")

    summary, active = asyncio.run(scenario())

    assert summary.total_sessions == 3
    assert summary.active_sessions == 1
    assert summary.suspended_sessions == 1
    assert summary.completed_sessions == 1
    assert summary.sessions_by_type["task"] == 2
    assert summary.last_activity is not None
    assert [session.id for session in active] == ["a"]


def test_cascade_delete_detaches_from_parent(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "root", "orchestration_id": "o", "type": "planning"})
        await registry.create_session(
            {"id": "mid", "orchestration_id": "o", "type": "task", "parent_session_id": "root"}
        )
        await registry.create_session(
            {"id": "leaf", "orchestration_id": "o", "type": "task", "parent_session_id": "mid"}
        )
        removed = await registry.delete_session("mid")
        root = await registry.require_session("root")
        again = await registry.delete_session("mid")
        return removed, root, again

    removed, root, again = asyncio.run(scenario())

    assert sorted(removed) == ["leaf", "mid"]
    assert root.child_session_ids == []
    assert again == []
    assert asyncio.run(registry.find_hierarchy_inconsistencies()) == []


def test_cleanup_removes_finished_sessions_and_prunes_parents(tmp_path: Path) -> None:
    registry, _ = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "root", "orchestration_id": "o", "type": "planning"})
        await registry.create_session(
            {"id": "done", "orchestration_id": "o", "type": "task", "parent_session_id": "root"}
        )
        await registry.create_session(
            {"id": "broken", "orchestration_id": "o", "type": "task", "parent_session_id": "root"}
        )
        await registry.update_state("done", "completed")
        await registry.update_state("broken", "failed")
        report = await registry.cleanup_sessions()
        root = await registry.require_session("root")
        backups = await registry.store.list_backups(RecordKind.SESSION, "done")
        return report, root, backups

    report, root, backups = asyncio.run(scenario())

    assert report.removed == 2
    assert report.backed_up == 2
    assert report.remaining == 1
    assert sorted(report.removed_ids) == ["broken", "done"]
    assert root.child_session_ids == []
    assert "cleanup_sessions" in {backup.reason for backup in backups}


def test_archive_only_removes_idle_finished_sessions(tmp_path: Path) -> None:
    registry, clock = make_registry(tmp_path)

    async def scenario():
        await registry.create_session({"id": "old", "orchestration_id": "o", "type": "task"})
        await registry.update_state("old", "completed")
        await registry.create_session({"id": "running", "orchestration_id": "o", "type": "task"})
        clock.advance(days=45)
        await registry.create_session({"id": "recent", "orchestration_id": "o", "type": "task"})
        await registry.update_state("recent", "completed")
        return await registry.archive_sessions(30)

    report = asyncio.run(scenario())

    assert report.operation == "archive_sessions"
    assert report.removed_ids == ["old"]
    assert report.remaining == 2

    with pytest.raises(RecordValidationError):
        asyncio.run(registry.archive_sessions(-1))


def test_cleanup_reports_partial_failures(tmp_path: Path, monkeypatch, caplog) -> None:
    registry, _ = make_registry(tmp_path)
    store = registry.store

    async def seed():
        await registry.create_session({"id": "root", "orchestration_id": "o", "type": "planning"})
        for session_id in ("done", "stuck"):
            await registry.create_session(
                {"id": session_id, "orchestration_id": "o", "type": "task", "parent_session_id": "root"}
            )
            await registry.update_state(session_id, "completed")

    asyncio.run(seed())
    original_delete = store.delete
    original_backup = store.create_backup

    async def flaky_delete(kind, record_id, *, backup=True):
        if record_id == "stuck":
            raise StorageError("file is read-only")
        return await original_delete(kind, record_id, backup=backup)

    async def flaky_backup(kind, record_id, *, reason="manual"):
        if record_id == "done":
            raise StorageError("backup volume offline")
        return await original_backup(kind, record_id, reason=reason)

    monkeypatch.setattr(store, "delete", flaky_delete)
    monkeypatch.setattr(store, "create_backup", flaky_backup)
    caplog.set_level("WARNING", logger="cadence.sessions.registry")

    report = asyncio.run(registry.cleanup_sessions())
    monkeypatch.undo()

    assert report.removed_ids == ["done"]
    assert report.backed_up == 1
    assert report.failed == 1
    assert report.errors == ["stuck: file is read-only"]
    assert report.remaining == 2
    assert asyncio.run(registry.require_session("root")).child_session_ids == ["stuck"]
    assert any(record.getMessage() == "Backup before removal failed" for record in caplog.records)
