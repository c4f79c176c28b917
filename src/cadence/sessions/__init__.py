"""Session lifecycle and hierarchy navigation."""

from .models import (
    ContextSummary,
    HierarchyIssue,
    RelatedSessions,
    Session,
    SessionQuery,
    SessionSpec,
    SessionState,
    SessionType,
)
from .registry import SessionRegistry

__all__ = [
    "ContextSummary",
    "HierarchyIssue",
    "RelatedSessions",
    "Session",
    "SessionQuery",
    "SessionRegistry",
    "SessionSpec",
    "SessionState",
    "SessionType",
]
