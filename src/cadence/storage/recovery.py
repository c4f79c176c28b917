"""Structural repair and reconstruction of corrupted record documents."""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from .models import RecordKind, RecordModel, short_id

RECORD_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

_MAX_PATCH_ROUNDS = 256

_BARE_KEY = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_SCALAR_PAIR = re.compile(
    r'"(?P<key>[A-Za-z_][A-Za-z0-9_]*)"\s*:\s*'
    r'(?P<value>"(?:[^"\\\n]|\\.)*"|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null)'
)

# Fields kept when a record has to be rebuilt from fragments. Lifecycle
# fields are left out on purpose so the safe defaults below always apply.
_PRESERVED_FIELDS: dict[RecordKind, tuple[str, ...]] = {
    RecordKind.TASK: (
        "orchestration_id",
        "name",
        "description",
        "priority",
        "parent_task_id",
        "session_id",
        "plan_id",
        "assignee",
        "created_at",
    ),
    RecordKind.SESSION: (
        "orchestration_id",
        "type",
        "task_id",
        "parent_session_id",
        "timestamp",
    ),
    RecordKind.PLAN: (
        "orchestration_id",
        "name",
        "description",
        "created_at",
    ),
}

_LIFECYCLE_DEFAULTS: dict[RecordKind, dict[str, Any]] = {
    RecordKind.TASK: {"status": "not_started"},
    RecordKind.SESSION: {"state": "suspended"},
    RecordKind.PLAN: {"status": "draft"},
}


def _required_defaults(kind: RecordKind, now: datetime) -> dict[str, Any]:
    stamp = now.isoformat()
    if kind is RecordKind.TASK:
        return {
            "orchestration_id": "recovered",
            "name": "Recovered Task",
            "description": "Task recovered from corrupted data",
            "status": "not_started",
            "created_at": stamp,
            "updated_at": stamp,
        }
    if kind is RecordKind.SESSION:
        return {
            "orchestration_id": "recovered",
            "type": "interactive",
            "state": "suspended",
            "timestamp": stamp,
            "last_activity_at": stamp,
            "metadata": {"name": "Recovered Session"},
        }
    return {
        "orchestration_id": "recovered",
        "name": "Recovered Plan",
        "description": "Plan recovered from corrupted data",
        "status": "draft",
        "current_phase": "requirements_analysis",
        "created_at": stamp,
        "updated_at": stamp,
    }


@dataclass(slots=True)
class RecoveredDocument:
    """Outcome of running a raw document through the recovery pipeline."""

    record: RecordModel
    repaired: bool
    reconstructed: bool
    notes: list[str] = field(default_factory=list)


def _skip_insignificant(text: str, index: int) -> int:
    length = len(text)
    while index < length:
        if text[index].isspace():
            index += 1
        elif text.startswith("//", index):
            end = text.find("\n", index)
            index = length if end == -1 else end
        elif text.startswith("/*", index):
            end = text.find("*/", index + 2)
            index = length if end == -1 else end + 2
        else:
            break
    return index


def repair_json_text(text: str) -> str:
    """Fix the common hand-edit mistakes that make JSON unparseable.

    Removes ``//`` and ``/* */`` comments, drops trailing commas before a
    closing bracket and quotes bare object keys. String contents are never
    touched.
    """

    out: list[str] = []
    index = 0
    length = len(text)
    in_string = False
    last_significant = ""

    while index < length:
        char = text[index]
        if in_string:
            out.append(char)
            if char == "\\" and index + 1 < length:
                out.append(text[index + 1])
                index += 2
                continue
            if char == '"':
                in_string = False
                last_significant = '"'
            index += 1
            continue

        if char == '"':
            in_string = True
            out.append(char)
            index += 1
            continue

        if text.startswith("//", index) or text.startswith("/*", index):
            index = _skip_insignificant(text, index)
            continue

        if char == ",":
            following = _skip_insignificant(text, index + 1)
            if following < length and text[following] in "}]":
                index += 1
                continue

        if last_significant in {"{", ","} and (char.isalpha() or char in "_$"):
            match = _BARE_KEY.match(text, index)
            if match is not None:
                after = _skip_insignificant(text, match.end())
                if after < length and text[after] == ":":
                    out.append(f'"{match.group(0)}"')
                    index = match.end()
                    last_significant = '"'
                    continue

        out.append(char)
        if not char.isspace():
            last_significant = char
        index += 1

    return "".join(out)


def salvage_fields(text: str) -> dict[str, Any]:
    """Collect ``"key": scalar`` pairs from text that no longer parses.

    The first occurrence of a key wins, which favours top-level fields
    because records are written with identity fields first.
    """

    salvaged: dict[str, Any] = {}
    for match in _SCALAR_PAIR.finditer(text):
        key = match.group("key")
        if key in salvaged:
            continue
        try:
            salvaged[key] = json.loads(match.group("value"))
        except json.JSONDecodeError:
            continue
    return salvaged


def _choose_id(candidate: Any, record_id: str | None, prefix: str) -> str:
    if isinstance(candidate, str) and RECORD_ID_PATTERN.match(candidate):
        if record_id is None or candidate == record_id:
            return candidate
    if record_id and RECORD_ID_PATTERN.match(record_id):
        return record_id
    return short_id(prefix)


def _format_loc(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc)


def _drop_nested(candidate: dict[str, Any], loc: tuple[Any, ...]) -> str | None:
    """Remove the smallest piece of ``candidate`` that contains the error at ``loc``.

    The innermost list element on the path is dropped when there is one.
    Otherwise the failing nested key is removed, or its enclosing key when
    the failing key itself is missing. Top-level fields are left alone.
    """

    steps: list[tuple[Any, Any]] = []
    current: Any = candidate
    for part in loc:
        if isinstance(current, dict) and part in current:
            steps.append((current, part))
            current = current[part]
        elif isinstance(current, list) and isinstance(part, int) and 0 <= part < len(current):
            steps.append((current, part))
            current = current[part]
        else:
            break

    for depth in range(len(steps) - 1, 0, -1):
        container, key = steps[depth]
        if isinstance(container, list):
            container.pop(key)
            return _format_loc(loc[: depth + 1])

    if len(steps) == len(loc) and len(steps) > 1:
        container, key = steps[-1]
        container.pop(key)
        return _format_loc(loc)
    if len(steps) > 2:
        container, key = steps[-1]
        container.pop(key)
        return _format_loc(loc[: len(steps)])
    return None


def _validate_with_patches(
    kind: RecordKind,
    data: dict[str, Any],
    defaults: dict[str, Any],
    notes: list[str],
    lost: list[str] | None = None,
) -> RecordModel | None:
    """Validate ``data``, patching the narrowest part of it that fails.

    Nested failures drop the offending list element or key. Top-level
    fields are replaced with a default or dropped; dropped collections are
    appended to ``lost``.
    """

    model = kind.model
    candidate = copy.deepcopy(data)
    for _ in range(_MAX_PATCH_ROUNDS):
        try:
            return model.model_validate(candidate)
        except ValidationError as exc:
            errors = [error for error in exc.errors() if error["loc"]]
            if not errors:
                return None

            dropped = None
            for error in errors:
                if len(error["loc"]) > 1:
                    dropped = _drop_nested(candidate, tuple(error["loc"]))
                    if dropped is not None:
                        break
            if dropped is not None:
                notes.append(f"dropped invalid entry '{dropped}'")
                continue

            changed = False
            for name in sorted({str(error["loc"][0]) for error in errors}):
                if name in defaults and candidate.get(name) != defaults[name]:
                    candidate[name] = defaults[name]
                    notes.append(f"replaced invalid or missing field '{name}'")
                    changed = True
                elif name in candidate:
                    value = candidate.pop(name)
                    notes.append(f"dropped invalid field '{name}'")
                    if lost is not None and isinstance(value, (dict, list)):
                        lost.append(name)
                    changed = True
            if not changed:
                return None
    return None


def reconstruct_record(
    kind: RecordKind,
    fragments: dict[str, Any],
    *,
    record_id: str | None,
    now: datetime,
) -> RecoveredDocument:
    """Build a minimal valid record from whatever fields survived."""

    notes: list[str] = []
    defaults = _required_defaults(kind, now)
    candidate: dict[str, Any] = dict(defaults)
    for name in _PRESERVED_FIELDS[kind]:
        if name in fragments and fragments[name] is not None:
            candidate[name] = fragments[name]
    candidate.update(_LIFECYCLE_DEFAULTS[kind])
    candidate["id"] = _choose_id(fragments.get("id"), record_id, kind.value)
    defaults["id"] = candidate["id"]

    kept = sorted(name for name in _PRESERVED_FIELDS[kind] if name in fragments)
    notes.append(
        "reconstructed from fragments; kept fields: " + (", ".join(kept) if kept else "none")
    )

    record = _validate_with_patches(kind, candidate, defaults, notes)
    if record is None:
        record = kind.model.model_validate(defaults)
        notes.append("fell back to default record")
    return RecoveredDocument(record=record, repaired=False, reconstructed=True, notes=notes)


def recover_document(
    kind: RecordKind,
    raw: str,
    *,
    record_id: str | None,
    now: datetime,
) -> RecoveredDocument:
    """Run ``raw`` through parse, repair and reconstruction in that order."""

    notes: list[str] = []
    defaults = _required_defaults(kind, now)
    defaults["id"] = _choose_id(None, record_id, kind.value)

    document: Any = None
    repaired_text = False
    try:
        document = json.loads(raw)
    except json.JSONDecodeError as exc:
        notes.append(f"document did not parse: {exc.msg} at line {exc.lineno}")
        try:
            document = json.loads(repair_json_text(raw))
            repaired_text = True
            notes.append("repaired JSON syntax")
        except json.JSONDecodeError as repair_exc:
            notes.append(f"syntax repair failed: {repair_exc.msg}")
            document = None

    if isinstance(document, dict):
        if not repaired_text and (record_id is None or document.get("id") == record_id):
            try:
                record = kind.model.model_validate(document)
            except ValidationError as exc:
                notes.append(f"record failed validation: {len(exc.errors())} error(s)")
            else:
                notes.append("record parsed without changes")
                return RecoveredDocument(record=record, repaired=False, reconstructed=False, notes=notes)

        patched = dict(document)
        patched["id"] = _choose_id(document.get("id"), record_id, kind.value)
        if patched["id"] != document.get("id"):
            notes.append("restored record id from file name")
        lost: list[str] = []
        record = _validate_with_patches(kind, patched, defaults, notes, lost)
        if record is not None:
            if lost:
                notes.append("lost collections: " + ", ".join(lost))
            return RecoveredDocument(
                record=record, repaired=True, reconstructed=bool(lost), notes=notes
            )
        fragments = {key: value for key, value in document.items() if not isinstance(value, (dict, list))}
    else:
        if document is not None:
            notes.append("document is not a JSON object")
        fragments = salvage_fields(raw)

    result = reconstruct_record(kind, fragments, record_id=record_id, now=now)
    result.notes[:0] = notes
    return result


__all__ = [
    "RECORD_ID_PATTERN",
    "RecoveredDocument",
    "reconstruct_record",
    "recover_document",
    "repair_json_text",
    "salvage_fields",
]
