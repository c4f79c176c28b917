"""File-backed record store with atomic writes, backups and recovery."""

from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import re
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping, TypeVar

from pydantic import ValidationError

from ..config import CadenceSettings
from ..errors import (
    CorruptionError,
    NotFoundError,
    OrchestrationError,
    RecordValidationError,
    StorageError,
    describe_validation_error,
)
from .models import RecordKind, RecordModel
from .recovery import RECORD_ID_PATTERN, recover_document

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=RecordModel)

_LOCK_ERRNOS = {errno.EBUSY, errno.EAGAIN}
_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
_BACKUP_NAME = re.compile(
    r"^(?P<kind>session|task|plan)-(?P<id>.+)-(?P<stamp>\d{8}T\d{12}Z)(?:-(?P<seq>\d+))?\.json$"
)


def _backup_order(path: Path) -> tuple[str, int]:
    match = _BACKUP_NAME.match(path.name)
    if match is None:
        return ("", 0)
    return match.group("stamp"), int(match.group("seq") or 0)


def _atomic_write_text(path: Path, text: str) -> None:
    """Write text to path atomically (temp file, fsync, rename)."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(dir=str(target.parent), prefix=".tmp_", suffix=".json.tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


@dataclass(slots=True)
class BackupRecord:
    """Metadata describing a point-in-time copy of a record file."""

    original_path: str
    backup_path: str
    timestamp: datetime
    reason: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "original_path": self.original_path,
            "backup_path": self.backup_path,
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "size": self.size,
        }


@dataclass(slots=True)
class RecoveryResult:
    """Outcome of :meth:`FileStore.recover_record`."""

    kind: RecordKind
    record_id: str
    record: RecordModel
    reconstructed: bool
    repaired: bool
    backup: BackupRecord | None = None
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "record_id": self.record_id,
            "record": self.record.model_dump(mode="json"),
            "reconstructed": self.reconstructed,
            "repaired": self.repaired,
            "backup": self.backup.to_dict() if self.backup else None,
            "notes": list(self.notes),
        }


@dataclass(slots=True)
class _CacheEntry:
    signature: tuple[int, int]
    record: RecordModel


class FileStore:
    """Persist sessions, tasks and plans as one JSON document per record.

    Storage is the source of truth. The optional read-through cache only
    serves a record while the file's modification time and size are
    unchanged, and every write path drops the entry it touches.
    """

    def __init__(
        self,
        base_dir: Path,
        *,
        enable_backups: bool = True,
        max_backups: int = 10,
        write_retries: int = 3,
        retry_backoff: float = 0.01,
        cache_enabled: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_backups < 1:
            raise ValueError("max_backups must be >= 1")
        if write_retries < 1:
            raise ValueError("write_retries must be >= 1")
        self._base = Path(base_dir)
        self._enable_backups = enable_backups
        self._max_backups = max_backups
        self._write_retries = write_retries
        self._retry_backoff = retry_backoff
        self._cache_enabled = cache_enabled
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[tuple[RecordKind, str], _CacheEntry] = {}
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: CadenceSettings) -> "FileStore":
        return cls(
            settings.state_dir,
            enable_backups=settings.enable_backups,
            max_backups=settings.max_backups,
            write_retries=settings.write_retries,
            retry_backoff=settings.retry_backoff_seconds,
            cache_enabled=settings.cache_enabled,
        )

    @property
    def base_dir(self) -> Path:
        return self._base

    @property
    def backup_dir(self) -> Path:
        return self._base / "backups"

    @property
    def backups_enabled(self) -> bool:
        return self._enable_backups

    def now(self) -> datetime:
        return self._clock()

    # -- paths -------------------------------------------------------------

    def _check_id(self, record_id: str) -> str:
        if not isinstance(record_id, str) or not RECORD_ID_PATTERN.match(record_id):
            raise RecordValidationError(
                f"Invalid record id {record_id!r}",
                [f"id: must match {RECORD_ID_PATTERN.pattern}"],
            )
        return record_id

    def record_path(self, kind: RecordKind, record_id: str) -> Path:
        return self._base / kind.directory / f"{self._check_id(record_id)}.json"

    def _ensure_directories(self) -> None:
        for kind in RecordKind:
            (self._base / kind.directory).mkdir(parents=True, exist_ok=True)
        self.backup_dir.mkdir(parents=True, exist_ok=True)

    async def initialize(self) -> None:
        """Create the directory layout if it does not exist yet."""

        if self._initialized:
            return
        try:
            await asyncio.to_thread(self._ensure_directories)
        except OSError as exc:
            raise StorageError(f"Unable to create state directories under {self._base}", cause=exc) from exc
        self._initialized = True
        logger.debug("Initialized file store", extra={"base_dir": str(self._base)})

    # -- validation --------------------------------------------------------

    def validate(self, kind: RecordKind, record: RecordModel | Mapping[str, Any]) -> RecordModel:
        """Validate ``record`` against the schema of ``kind`` without writing."""

        if isinstance(record, RecordModel):
            if not isinstance(record, kind.model):
                raise RecordValidationError(
                    f"Expected {kind.model.__name__} for kind '{kind.value}'",
                    [f"<root>: got {type(record).__name__}"],
                )
            payload: Any = record.model_dump(mode="json", warnings=False)
        else:
            payload = dict(record)
        try:
            validated = kind.model.model_validate(payload)
        except ValidationError as exc:
            errors = describe_validation_error(exc)
            raise RecordValidationError(
                f"{kind.value.capitalize()} record failed validation", errors
            ) from exc
        self._check_id(validated.id)
        return validated

    # -- writes ------------------------------------------------------------

    async def _write_with_retry(self, path: Path, text: str) -> None:
        for attempt in range(1, self._write_retries + 1):
            try:
                await asyncio.to_thread(_atomic_write_text, path, text)
                return
            except OSError as exc:
                locked = exc.errno in _LOCK_ERRNOS
                if locked and attempt < self._write_retries:
                    logger.debug(
                        "Write blocked by lock; retrying",
                        extra={"path": str(path), "attempt": attempt},
                    )
                    await asyncio.sleep(self._retry_backoff * attempt)
                    continue
                if locked:
                    raise StorageError(
                        f"{path} stayed locked after {attempt} attempts",
                        cause=exc,
                        context={"path": str(path), "attempts": attempt},
                        recoverable=True,
                    ) from exc
                raise StorageError(
                    f"Failed to write {path}", cause=exc, context={"path": str(path)}
                ) from exc

    async def _write_record(self, kind: RecordKind, record: RecordModel) -> None:
        path = self.record_path(kind, record.id)
        text = json.dumps(record.model_dump(mode="json"), indent=2) + "\n"
        await self._write_with_retry(path, text)
        self._invalidate(kind, record.id)

    async def _backup_quietly(self, kind: RecordKind, record_id: str, reason: str) -> BackupRecord | None:
        if not self._enable_backups:
            return None
        try:
            return await self.create_backup(kind, record_id, reason=reason)
        except OrchestrationError as exc:
            logger.warning(
                "Backup failed; continuing with primary operation",
                extra={"kind": kind.value, "id": record_id, "reason": reason, "error": str(exc)},
            )
            return None

    async def save(self, kind: RecordKind, record: RecordT | Mapping[str, Any]) -> RecordT:
        """Validate and atomically persist ``record``; back up any previous version."""

        validated = self.validate(kind, record)
        await self.initialize()
        path = self.record_path(kind, validated.id)
        if await asyncio.to_thread(path.exists):
            await self._backup_quietly(kind, validated.id, "pre-save")
        await self._write_record(kind, validated)
        return validated  # type: ignore[return-value]

    async def delete(self, kind: RecordKind, record_id: str, *, backup: bool = True) -> bool:
        """Back up then remove a record. Returns ``False`` when it was absent.

        Bulk callers that already took their own backup pass ``backup=False``.
        """

        path = self.record_path(kind, record_id)
        if not await asyncio.to_thread(path.exists):
            self._invalidate(kind, record_id)
            return False
        if backup:
            await self._backup_quietly(kind, record_id, "pre-delete")
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Failed to delete {path}", cause=exc) from exc
        finally:
            self._invalidate(kind, record_id)
        logger.debug("Deleted record", extra={"kind": kind.value, "id": record_id})
        return True

    # -- reads -------------------------------------------------------------

    def _invalidate(self, kind: RecordKind, record_id: str) -> None:
        self._cache.pop((kind, record_id), None)

    def _parse(self, kind: RecordKind, path: Path, raw: str) -> RecordModel:
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CorruptionError(str(path), f"{exc.msg} at line {exc.lineno} column {exc.colno}") from exc
        if not isinstance(document, dict):
            raise CorruptionError(str(path), "document is not a JSON object")
        try:
            return kind.model.model_validate(document)
        except ValidationError as exc:
            raise CorruptionError(str(path), "; ".join(describe_validation_error(exc))) from exc

    def _read_file(self, path: Path) -> tuple[tuple[int, int], str] | None:
        try:
            stat = path.stat()
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return (stat.st_mtime_ns, stat.st_size), raw

    async def load(self, kind: RecordKind, record_id: str) -> RecordModel | None:
        """Return the record or ``None`` if absent; raise ``CorruptionError`` if unreadable."""

        path = self.record_path(kind, record_id)
        key = (kind, record_id)

        if self._cache_enabled and key in self._cache:
            try:
                stat = await asyncio.to_thread(path.stat)
            except FileNotFoundError:
                self._invalidate(kind, record_id)
                return None
            except OSError as exc:
                raise StorageError(f"Failed to stat {path}", cause=exc) from exc
            entry = self._cache.get(key)
            if entry is not None and entry.signature == (stat.st_mtime_ns, stat.st_size):
                return entry.record.model_copy(deep=True)
            self._invalidate(kind, record_id)

        try:
            result = await asyncio.to_thread(self._read_file, path)
        except UnicodeDecodeError as exc:
            raise CorruptionError(str(path), f"not valid UTF-8: {exc.reason}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read {path}", cause=exc) from exc
        if result is None:
            return None

        signature, raw = result
        record = self._parse(kind, path, raw)
        if self._cache_enabled:
            self._cache[key] = _CacheEntry(signature=signature, record=record.model_copy(deep=True))
        return record

    async def require(self, kind: RecordKind, record_id: str) -> RecordModel:
        record = await self.load(kind, record_id)
        if record is None:
            raise NotFoundError(kind.value, record_id)
        return record

    async def exists(self, kind: RecordKind, record_id: str) -> bool:
        return await asyncio.to_thread(self.record_path(kind, record_id).exists)

    def _scan_ids(self, kind: RecordKind) -> list[str]:
        directory = self._base / kind.directory
        if not directory.is_dir():
            return []
        return sorted(
            path.stem
            for path in directory.glob("*.json")
            if not path.name.startswith(".") and RECORD_ID_PATTERN.match(path.stem)
        )

    async def list_ids(self, kind: RecordKind) -> list[str]:
        try:
            return await asyncio.to_thread(self._scan_ids, kind)
        except OSError as exc:
            raise StorageError(f"Failed to list {kind.directory}", cause=exc) from exc

    async def query(
        self,
        kind: RecordKind,
        where: Callable[[Any], bool] | None = None,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Any]:
        """Scan every record of ``kind``, filter, sort newest first, then page.

        Records that fail to parse are skipped with a warning.
        """

        matches: list[RecordModel] = []
        for record_id in await self.list_ids(kind):
            try:
                record = await self.load(kind, record_id)
            except CorruptionError as exc:
                logger.warning(
                    "Skipping corrupted record during query",
                    extra={"kind": kind.value, "id": record_id, "details": exc.details},
                )
                continue
            if record is None:
                continue
            if where is None or where(record):
                matches.append(record)

        matches.sort(key=lambda record: (getattr(record, kind.sort_field), record.id), reverse=True)
        start = max(offset, 0)
        if limit is None:
            return matches[start:]
        return matches[start : start + max(limit, 0)]

    # -- backups -----------------------------------------------------------

    def _stamp(self) -> str:
        moment = self._clock()
        if moment.tzinfo is not None:
            moment = moment.astimezone(timezone.utc)
        return moment.strftime(_STAMP_FORMAT)

    def _backups_for(self, kind: RecordKind, record_id: str) -> list[Path]:
        if not self.backup_dir.is_dir():
            return []
        prefix = f"{kind.value}-{record_id}-"
        found = []
        for path in self.backup_dir.glob(f"{prefix}*.json"):
            match = _BACKUP_NAME.match(path.name)
            if match and match.group("kind") == kind.value and match.group("id") == record_id:
                found.append(path)
        return found

    def _copy_to_backup(self, kind: RecordKind, record_id: str, reason: str) -> BackupRecord | None:
        source = self.record_path(kind, record_id)
        if not source.exists():
            return None
        self.backup_dir.mkdir(parents=True, exist_ok=True)

        stamp = self._stamp()
        target = self.backup_dir / f"{kind.value}-{record_id}-{stamp}.json"
        sequence = 0
        while target.exists():
            sequence += 1
            target = self.backup_dir / f"{kind.value}-{record_id}-{stamp}-{sequence}.json"

        shutil.copyfile(source, target)
        backup = BackupRecord(
            original_path=str(source),
            backup_path=str(target),
            timestamp=self._clock(),
            reason=reason,
            size=target.stat().st_size,
        )
        _atomic_write_text(_meta_path(target), json.dumps(backup.to_dict(), indent=2) + "\n")
        return backup

    def _rotate(self, kind: RecordKind, record_id: str) -> int:
        backups = self._backups_for(kind, record_id)
        if len(backups) <= self._max_backups:
            return 0
        backups.sort(key=lambda path: (path.stat().st_mtime_ns, *_backup_order(path)), reverse=True)
        removed = 0
        for stale in backups[self._max_backups :]:
            try:
                stale.unlink()
                _meta_path(stale).unlink(missing_ok=True)
                removed += 1
            except OSError as exc:
                logger.warning(
                    "Failed to rotate backup",
                    extra={"path": str(stale), "error": str(exc)},
                )
        return removed

    async def create_backup(
        self, kind: RecordKind, record_id: str, *, reason: str = "manual"
    ) -> BackupRecord | None:
        """Copy the current file aside. Returns ``None`` when there is nothing to copy."""

        try:
            backup = await asyncio.to_thread(self._copy_to_backup, kind, record_id, reason)
            if backup is not None:
                await asyncio.to_thread(self._rotate, kind, record_id)
        except OSError as exc:
            raise StorageError(
                f"Failed to back up {kind.value} '{record_id}'",
                cause=exc,
                recoverable=True,
            ) from exc
        if backup is not None:
            logger.debug(
                "Created backup",
                extra={"kind": kind.value, "id": record_id, "reason": reason, "path": backup.backup_path},
            )
        return backup

    def _read_backup_meta(self, path: Path) -> BackupRecord:
        meta = _meta_path(path)
        try:
            payload = json.loads(meta.read_text(encoding="utf-8"))
            return BackupRecord(
                original_path=payload["original_path"],
                backup_path=payload.get("backup_path", str(path)),
                timestamp=datetime.fromisoformat(payload["timestamp"]),
                reason=payload.get("reason", "unknown"),
                size=int(payload.get("size", path.stat().st_size)),
            )
        except (OSError, ValueError, KeyError, TypeError):
            stat = path.stat()
            match = _BACKUP_NAME.match(path.name)
            original = ""
            if match:
                kind = RecordKind(match.group("kind"))
                original = str(self._base / kind.directory / f"{match.group('id')}.json")
            return BackupRecord(
                original_path=original,
                backup_path=str(path),
                timestamp=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                reason="unknown",
                size=stat.st_size,
            )

    def _scan_backups(self, kind: RecordKind | None, record_id: str | None) -> list[BackupRecord]:
        if not self.backup_dir.is_dir():
            return []
        records = []
        for path in self.backup_dir.glob("*.json"):
            if path.name.endswith(".meta.json"):
                continue
            match = _BACKUP_NAME.match(path.name)
            if match is None:
                continue
            if kind is not None and match.group("kind") != kind.value:
                continue
            if record_id is not None and match.group("id") != record_id:
                continue
            records.append(self._read_backup_meta(path))
        records.sort(
            key=lambda record: (record.timestamp, *_backup_order(Path(record.backup_path))), reverse=True
        )
        return records

    async def list_backups(
        self, kind: RecordKind | None = None, record_id: str | None = None
    ) -> list[BackupRecord]:
        """Return backups newest first, optionally for one kind or record."""

        try:
            return await asyncio.to_thread(self._scan_backups, kind, record_id)
        except OSError as exc:
            raise StorageError("Failed to list backups", cause=exc) from exc

    async def restore_backup(self, kind: RecordKind, record_id: str, backup_path: Path | str) -> RecordModel:
        """Replace the current record with the content of a backup file."""

        source = Path(backup_path)
        if source.resolve().parent != self.backup_dir.resolve():
            raise RecordValidationError(
                "Backup path must point inside the backup directory",
                [f"backup_path: {source}"],
            )
        try:
            raw = await asyncio.to_thread(source.read_text, encoding="utf-8")
        except FileNotFoundError as exc:
            raise NotFoundError("backup", source.name) from exc
        except OSError as exc:
            raise StorageError(f"Failed to read backup {source}", cause=exc) from exc

        record = self._parse(kind, source, raw)
        if record.id != record_id:
            raise RecordValidationError(
                "Backup belongs to a different record",
                [f"id: expected {record_id}, found {record.id}"],
            )
        await self.initialize()
        await self._backup_quietly(kind, record_id, "pre-restore")
        await self._write_record(kind, record)
        logger.info(
            "Restored record from backup",
            extra={"kind": kind.value, "id": record_id, "backup": str(source)},
        )
        return record

    # -- recovery ----------------------------------------------------------

    async def recover_record(
        self, kind: RecordKind, record_id: str, *, write_back: bool = True
    ) -> RecoveryResult:
        """Repair or reconstruct a record whose file no longer loads.

        The original bytes are backed up first. ``reconstructed`` is set when
        the record had to be synthesised from fragments; ``repaired`` when the
        original content survived a syntax or field fix.
        """

        path = self.record_path(kind, record_id)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8", errors="replace")
        except FileNotFoundError as exc:
            raise NotFoundError(kind.value, record_id) from exc
        except OSError as exc:
            raise StorageError(f"Failed to read {path}", cause=exc) from exc

        backup = await self._backup_quietly(kind, record_id, "pre-recovery")
        outcome = recover_document(kind, raw, record_id=record_id, now=self._clock())

        if write_back and (outcome.repaired or outcome.reconstructed):
            await self._write_record(kind, outcome.record)
        self._invalidate(kind, record_id)

        log = logger.warning if outcome.reconstructed else logger.info
        log(
            "Recovered record",
            extra={
                "kind": kind.value,
                "id": record_id,
                "reconstructed": outcome.reconstructed,
                "repaired": outcome.repaired,
            },
        )
        return RecoveryResult(
            kind=kind,
            record_id=record_id,
            record=outcome.record,
            reconstructed=outcome.reconstructed,
            repaired=outcome.repaired,
            backup=backup,
            notes=outcome.notes,
        )

    # -- statistics --------------------------------------------------------

    def _collect_stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        total_bytes = 0
        for kind in RecordKind:
            directory = self._base / kind.directory
            files: list[Path] = []
            if directory.is_dir():
                files = [path for path in directory.glob("*.json") if not path.name.startswith(".")]
            counts[kind.directory] = len(files)
            total_bytes += sum(path.stat().st_size for path in files)
        backup_files: list[Path] = []
        if self.backup_dir.is_dir():
            backup_files = [
                path
                for path in self.backup_dir.glob("*.json")
                if not path.name.endswith(".meta.json")
            ]
        backup_bytes = sum(path.stat().st_size for path in backup_files)
        return {
            "base_dir": str(self._base),
            "counts": counts,
            "backups": len(backup_files),
            "record_bytes": total_bytes,
            "backup_bytes": backup_bytes,
            "total_bytes": total_bytes + backup_bytes,
            "backups_enabled": self._enable_backups,
            "max_backups": self._max_backups,
            "cached_records": len(self._cache),
        }

    async def storage_stats(self) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(self._collect_stats)
        except OSError as exc:
            raise StorageError("Failed to collect storage statistics", cause=exc) from exc


def _meta_path(backup_path: Path) -> Path:
    return backup_path.with_name(backup_path.name[: -len(".json")] + ".meta.json")


__all__ = ["BackupRecord", "FileStore", "RecoveryResult"]
