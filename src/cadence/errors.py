"""Typed error taxonomy shared by the store, the task graph and the session registry."""

from __future__ import annotations

from typing import Any, Iterable

from pydantic import ValidationError


class OrchestrationError(RuntimeError):
    """Base class for every error surfaced by Cadence operations."""

    code = "orchestration_error"

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class NotFoundError(OrchestrationError):
    """Raised when a session, task or plan does not exist."""

    code = "not_found"

    def __init__(self, kind: str, record_id: str) -> None:
        super().__init__(
            f"{kind.capitalize()} '{record_id}' not found",
            context={"kind": kind, "id": record_id},
        )
        self.kind = kind
        self.record_id = record_id


class CorruptionError(OrchestrationError):
    """Raised when a stored record exists but cannot be parsed or validated."""

    code = "corrupted"

    def __init__(self, path: str, details: str) -> None:
        super().__init__(
            f"Record at {path} is corrupted: {details}",
            context={"path": path, "details": details},
            recoverable=True,
        )
        self.path = path
        self.details = details


class RecordValidationError(OrchestrationError):
    """Raised when a record or caller input violates its schema or an invariant."""

    code = "validation_failed"

    def __init__(self, message: str, errors: Iterable[str] | None = None) -> None:
        collected = list(errors or [])
        super().__init__(message, context={"errors": collected})
        self.errors = collected


class StateTransitionError(OrchestrationError):
    """Raised when a task status or session state change is not allowed."""

    code = "state_transition_rejected"

    def __init__(
        self,
        current: str,
        requested: str,
        allowed: Iterable[str] = (),
        *,
        message: str | None = None,
    ) -> None:
        allowed_list = sorted(allowed)
        super().__init__(
            message
            or (
                f"Invalid transition from '{current}' to '{requested}'"
                f" (allowed: {', '.join(allowed_list) or 'none'})"
            ),
            context={"current": current, "requested": requested, "allowed": allowed_list},
        )
        self.current = current
        self.requested = requested
        self.allowed = allowed_list


class StorageError(OrchestrationError):
    """Raised for I/O failures other than transient lock contention."""

    code = "storage_failure"

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        context: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        merged = dict(context or {})
        if cause is not None:
            merged.setdefault("cause", f"{type(cause).__name__}: {cause}")
        super().__init__(message, context=merged, recoverable=recoverable)
        self.cause = cause


class HierarchyError(StorageError):
    """Raised when a parent/child link could only be written on one side."""

    code = "hierarchy_inconsistent"

    def __init__(
        self,
        parent_id: str,
        child_id: str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(
            f"Session '{child_id}' was created but could not be linked to parent '{parent_id}'",
            cause=cause,
            context={"parent_id": parent_id, "child_id": child_id},
            recoverable=True,
        )
        self.parent_id = parent_id
        self.child_id = child_id


def describe_validation_error(exc: ValidationError) -> list[str]:
    """Flatten a pydantic error into ``"field.path: message"`` strings."""

    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "<root>"
        messages.append(f"{location}: {error['msg']}")
    return messages


__all__ = [
    "CorruptionError",
    "HierarchyError",
    "NotFoundError",
    "OrchestrationError",
    "RecordValidationError",
    "StateTransitionError",
    "StorageError",
    "describe_validation_error",
]
