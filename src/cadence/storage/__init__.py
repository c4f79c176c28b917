"""Storage primitives for Cadence."""

from .models import RecordKind, RecordModel
from .recovery import RecoveredDocument, recover_document, repair_json_text, salvage_fields
from .store import BackupRecord, FileStore, RecoveryResult

__all__ = [
    "BackupRecord",
    "FileStore",
    "RecordKind",
    "RecordModel",
    "RecoveredDocument",
    "RecoveryResult",
    "recover_document",
    "repair_json_text",
    "salvage_fields",
]
