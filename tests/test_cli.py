from __future__ import annotations

import argparse
import asyncio
import importlib.util
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest

from cadence.storage import FileStore, RecordKind
from cadence.storage.models import Session, Task


def _load_diag(module_name: str):
    module_path = Path(__file__).resolve().parents[1] / "scripts" / "cadence_diag.py"
    spec = importlib.util.spec_from_file_location(module_name, module_path)
    assert spec and spec.loader
    diag = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(diag)
    return diag


def _seed_state(tmp_path: Path, monkeypatch) -> FileStore:
    state_dir = tmp_path / "state"
    monkeypatch.setenv("CADENCE_STATE_DIR", str(state_dir))
    store = FileStore(state_dir)

    async def seed() -> None:
        await store.initialize()
        await store.save(RecordKind.TASK, Task(id="t-1", orchestration_id="o", name="Build"))
        await store.save(
            RecordKind.TASK,
            Task(id="t-2", orchestration_id="o", name="Deploy", dependencies=[{"task_id": "t-1"}]),
        )
        await store.save(RecordKind.TASK, Task(id="t-3", orchestration_id="other", name="Elsewhere"))
        await store.save(RecordKind.SESSION, Session(id="s-1", orchestration_id="o", type="planning"))

    asyncio.run(seed())
    return store


def test_diagnostics_cli_reports_missing_state_dir(tmp_path: Path) -> None:
    script = Path("scripts/cadence_diag.py").resolve()
    repo_root = Path(__file__).resolve().parents[1]
    env = os.environ.copy()
    env["PYTHONPATH"] = f"{repo_root / 'src'}" + os.pathsep + env.get("PYTHONPATH", "")
    env["CADENCE_STATE_DIR"] = str(tmp_path / "absent")
    process = subprocess.run(
        [sys.executable, str(script), "stats"],
        cwd=str(repo_root),
        capture_output=True,
        text=True,
        env=env,
    )
    assert process.returncode != 0
    assert "State directory not found" in process.stdout


def test_tasks_lists_filtered_records(tmp_path: Path, monkeypatch, capsys) -> None:
    _seed_state(tmp_path, monkeypatch)
    diag = _load_diag("cadence_diag_tasks_module")

    diag.cmd_tasks(argparse.Namespace(orchestration_id="o", status=None, json=False))

    lines = capsys.readouterr().out.strip().splitlines()
    assert sorted(lines) == ["t-1 [not_started] Build (o)", "t-2 [not_started] Deploy (o)"]

    diag.cmd_tasks(argparse.Namespace(orchestration_id=None, status=["completed"], json=True))
    assert json.loads(capsys.readouterr().out) == []


def test_sessions_and_stats_print_json(tmp_path: Path, monkeypatch, capsys) -> None:
    _seed_state(tmp_path, monkeypatch)
    diag = _load_diag("cadence_diag_sessions_module")

    diag.main(["sessions", "--orchestration-id", "o"])
    sessions = json.loads(capsys.readouterr().out)
    assert [item["session_id"] for item in sessions] == ["s-1"]
    assert sessions[0]["state"] == "active"

    diag.main(["stats"])
    stats = json.loads(capsys.readouterr().out)
    assert stats["counts"] == {"sessions": 1, "tasks": 3, "plans": 0}


def test_validate_exits_nonzero_on_problems(tmp_path: Path, monkeypatch, capsys) -> None:
    store = _seed_state(tmp_path, monkeypatch)
    diag = _load_diag("cadence_diag_validate_module")

    diag.cmd_validate(argparse.Namespace(orchestration_id="o"))
    clean = json.loads(capsys.readouterr().out)
    assert clean["dependencies"]["is_valid"] is True
    assert clean["hierarchy_issues"] == []

    asyncio.run(
        store.save(
            RecordKind.TASK,
            Task(id="t-4", orchestration_id="o", name="Dangling", dependencies=[{"task_id": "ghost"}]),
        )
    )
    with pytest.raises(SystemExit) as excinfo:
        diag.cmd_validate(argparse.Namespace(orchestration_id="o"))

    assert excinfo.value.code == 1
    payload = json.loads(capsys.readouterr().out)
    assert payload["dependencies"]["invalid_dependencies"] == ["t-4 -> ghost"]


def test_recover_and_backups(tmp_path: Path, monkeypatch, capsys) -> None:
    store = _seed_state(tmp_path, monkeypatch)
    path = store.base_dir / "tasks" / "t-1.json"
    path.write_text(path.read_text(encoding="utf-8").replace('"status"', "status", 1), encoding="utf-8")
    diag = _load_diag("cadence_diag_recover_module")

    diag.cmd_recover(argparse.Namespace(kind="task", record_id="t-1", dry_run=True))
    dry = json.loads(capsys.readouterr().out)
    assert dry["repaired"] is True
    assert dry["backup"]["reason"] == "pre-recovery"
    assert '"status"' not in path.read_text(encoding="utf-8")

    diag.main(["recover", "task", "t-1"])
    applied = json.loads(capsys.readouterr().out)
    assert applied["backup"]["reason"] == "pre-recovery"

    diag.main(["backups", "--kind", "task", "--limit", "1"])
    backups = json.loads(capsys.readouterr().out)
    assert len(backups) == 1
    assert backups[0]["reason"] == "pre-recovery"


def test_store_errors_exit_with_code(tmp_path: Path, monkeypatch, capsys) -> None:
    _seed_state(tmp_path, monkeypatch)
    diag = _load_diag("cadence_diag_error_module")

    with pytest.raises(SystemExit) as excinfo:
        diag.main(["recover", "plan", "missing-plan"])

    assert excinfo.value.code == 1
    assert "Error (not_found)" in capsys.readouterr().out
