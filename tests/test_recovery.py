from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from cadence.errors import CorruptionError, NotFoundError
from cadence.storage import FileStore, RecordKind, recover_document, repair_json_text, salvage_fields
from cadence.storage.models import Session, SessionState, Task, TaskPriority, TaskStatus

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def task_document(**overrides) -> str:
    task = Task.model_validate(
        {
            "id": "task-7",
            "orchestration_id": "orch-1",
            "name": "Migrate schema",
            "description": "Move tables to the new layout",
            "status": "in_progress",
            "priority": "high",
            "acceptance_criteria": [{"description": "All tables migrated"}],
            "dependencies": [{"task_id": "task-3"}],
            **overrides,
        }
    )
    return json.dumps(task.model_dump(mode="json"), indent=2)


def test_repair_strips_comments_trailing_commas_and_quotes_keys() -> None:
    broken = '{id: "t1", // inline note\n "tags": ["a", "b",], /* block */ "name": "x",}'

    assert json.loads(repair_json_text(broken)) == {"id": "t1", "tags": ["a", "b"], "name": "x"}


def test_repair_leaves_string_contents_alone() -> None:
    text = '{"text": "a, } // not a comment", "path": "/* still text */"}'

    assert repair_json_text(text) == text


def test_salvage_keeps_first_occurrence() -> None:
    fragments = salvage_fields('{"id": "outer", "nested": {"id": "inner", "count": 3, "ok": true')

    assert fragments == {"id": "outer", "count": 3, "ok": True}


def test_truncated_task_is_reconstructed_in_safe_state() -> None:
    raw = task_document()
    truncated = raw[: raw.index('"acceptance_criteria"')]

    result = recover_document(RecordKind.TASK, truncated, record_id="task-7", now=NOW)

    assert result.reconstructed is True
    record = result.record
    assert record.id == "task-7"
    assert record.orchestration_id == "orch-1"
    assert record.name == "Migrate schema"
    assert record.priority is TaskPriority.HIGH
    assert record.status is TaskStatus.NOT_STARTED
    assert record.dependencies == []


def test_trailing_comma_is_repaired_without_reconstruction() -> None:
    raw = task_document().rstrip()
    raw = raw[:-1].rstrip() + ",\n}"

    result = recover_document(RecordKind.TASK, raw, record_id="task-7", now=NOW)

    assert result.repaired is True
    assert result.reconstructed is False
    assert result.record.status is TaskStatus.IN_PROGRESS
    assert result.record.dependencies[0].task_id == "task-3"


def test_missing_required_field_is_patched() -> None:
    raw = json.dumps({"id": "task-9", "orchestration_id": "orch", "status": "completed"})

    result = recover_document(RecordKind.TASK, raw, record_id="task-9", now=NOW)

    assert result.repaired is True
    assert result.record.name == "Recovered Task"
    assert result.record.status is TaskStatus.COMPLETED


def test_file_name_wins_over_mismatched_id() -> None:
    raw = json.dumps({"id": "someone-else", "orchestration_id": "orch", "name": "Copied"})

    result = recover_document(RecordKind.TASK, raw, record_id="task-5", now=NOW)

    assert result.record.id == "task-5"
    assert any("file name" in note for note in result.notes)


def test_unreadable_session_becomes_suspended_interactive_session() -> None:
    result = recover_document(RecordKind.SESSION, "\x00\x00garbage", record_id="sess-1", now=NOW)

    assert result.reconstructed is True
    assert result.record.id == "sess-1"
    assert result.record.state is SessionState.SUSPENDED
    assert result.record.type.value == "interactive"


def test_store_recovers_corrupted_file_and_backs_it_up(tmp_path: Path) -> None:
    store = FileStore(tmp_path, clock=lambda: NOW)
    directory = tmp_path / "tasks"
    directory.mkdir(parents=True)
    raw = task_document()
    (directory / "task-7.json").write_text(raw[: len(raw) // 2], encoding="utf-8")

    with pytest.raises(CorruptionError):
        asyncio.run(store.load(RecordKind.TASK, "task-7"))

    result = asyncio.run(store.recover_record(RecordKind.TASK, "task-7"))

    assert result.reconstructed is True
    assert result.backup is not None and result.backup.reason == "pre-recovery"
    reloaded = asyncio.run(store.require(RecordKind.TASK, "task-7"))
    assert reloaded.status is TaskStatus.NOT_STARTED
    assert reloaded.name == "Migrate schema"
    assert result.to_dict()["record"]["id"] == "task-7"


def test_dry_run_recovery_leaves_file_untouched(tmp_path: Path) -> None:
    store = FileStore(tmp_path, clock=lambda: NOW, enable_backups=False)
    directory = tmp_path / "tasks"
    directory.mkdir(parents=True)
    path = directory / "task-7.json"
    path.write_text("{broken", encoding="utf-8")

    result = asyncio.run(store.recover_record(RecordKind.TASK, "task-7", write_back=False))

    assert result.reconstructed is True
    assert path.read_text(encoding="utf-8") == "{broken"


def test_recovering_missing_file_is_not_found(tmp_path: Path) -> None:
    store = FileStore(tmp_path)

    with pytest.raises(NotFoundError):
        asyncio.run(store.recover_record(RecordKind.PLAN, "plan-1"))


def session_document() -> dict:
    session = Session.model_validate(
        {
            "id": "sess-4",
            "orchestration_id": "orch-1",
            "type": "task",
            "context": {
                "messages": [{"content": f"message {index}"} for index in range(5)],
                "decisions": [{"description": "Use a recursive descent parser"}],
                "current_focus": "parser",
                "variables": {"attempt": 2},
            },
        }
    )
    return session.model_dump(mode="json")


def test_bad_nested_entry_is_dropped_without_losing_siblings() -> None:
    document = session_document()
    del document["context"]["messages"][0]["content"]

    result = recover_document(RecordKind.SESSION, json.dumps(document), record_id="sess-4", now=NOW)

    assert result.repaired is True
    assert result.reconstructed is False
    context = result.record.context
    assert [message.content for message in context.messages] == [f"message {index}" for index in range(1, 5)]
    assert context.current_focus == "parser"
    assert context.decisions[0].description == "Use a recursive descent parser"
    assert context.variables == {"attempt": 2}
    assert "dropped invalid entry 'context.messages.0'" in result.notes


def test_bad_nested_key_is_removed_in_place() -> None:
    document = session_document()
    document["context"]["current_focus"] = ["not", "a", "string"]

    result = recover_document(RecordKind.SESSION, json.dumps(document), record_id="sess-4", now=NOW)

    assert result.reconstructed is False
    assert result.record.context.current_focus == ""
    assert len(result.record.context.messages) == 5


def test_dropping_a_whole_collection_counts_as_reconstruction() -> None:
    document = json.loads(task_document())
    document["acceptance_criteria"] = "all tables migrated"

    result = recover_document(RecordKind.TASK, json.dumps(document), record_id="task-7", now=NOW)

    assert result.repaired is True
    assert result.reconstructed is True
    assert result.record.acceptance_criteria == []
    assert result.record.dependencies[0].task_id == "task-3"
    assert "lost collections: acceptance_criteria" in result.notes


def test_store_writes_back_session_with_nested_repair(tmp_path: Path) -> None:
    store = FileStore(tmp_path, clock=lambda: NOW)
    directory = tmp_path / "sessions"
    directory.mkdir(parents=True)
    document = session_document()
    del document["context"]["messages"][2]["content"]
    (directory / "sess-4.json").write_text(json.dumps(document), encoding="utf-8")

    result = asyncio.run(store.recover_record(RecordKind.SESSION, "sess-4"))

    assert result.repaired is True
    assert result.reconstructed is False
    reloaded = asyncio.run(store.require(RecordKind.SESSION, "sess-4"))
    assert len(reloaded.context.messages) == 4
    assert reloaded.context.current_focus == "parser"
