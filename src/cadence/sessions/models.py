"""Session inputs, the lifecycle table and navigation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..storage.models import (
    ArtifactType,
    Session,
    SessionArtifact,
    SessionContext,
    SessionDecision,
    SessionMessage,
    SessionMetadata,
    SessionState,
    SessionType,
    ThinkingSession,
    ThinkingState,
    ThinkingStep,
)

SESSION_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.ACTIVE: frozenset({SessionState.SUSPENDED, SessionState.COMPLETED, SessionState.FAILED}),
    SessionState.SUSPENDED: frozenset({SessionState.ACTIVE, SessionState.COMPLETED, SessionState.FAILED}),
    SessionState.COMPLETED: frozenset(),
    SessionState.FAILED: frozenset({SessionState.ACTIVE}),
}

SUMMARY_DECISION_LIMIT = 5


class SessionSpec(BaseModel):
    """Input accepted by :meth:`SessionRegistry.create_session`."""

    orchestration_id: str = Field(..., min_length=1)
    type: SessionType
    id: str | None = Field(default=None, description="Explicit id; generated when omitted.")
    task_id: str | None = None
    parent_session_id: str | None = None
    context: SessionContext | None = Field(
        default=None, description="Seed context, e.g. summaries selected from earlier sessions."
    )
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)


class SessionQuery(BaseModel):
    orchestration_id: str | None = None
    type: list[SessionType] | None = None
    state: list[SessionState] | None = None
    task_id: str | None = None
    parent_session_id: str | None = None
    tags: list[str] | None = None
    active_after: datetime | None = None
    active_before: datetime | None = None
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=1)

    @field_validator("type", "state", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None or isinstance(value, (list, tuple, set, frozenset)):
            return value
        return [value]

    @field_validator("active_after", "active_before")
    @classmethod
    def _assume_utc(cls, value: datetime | None):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, session: Session) -> bool:
        if self.orchestration_id and session.orchestration_id != self.orchestration_id:
            return False
        if self.type and session.type not in self.type:
            return False
        if self.state and session.state not in self.state:
            return False
        if self.task_id and session.task_id != self.task_id:
            return False
        if self.parent_session_id and session.parent_session_id != self.parent_session_id:
            return False
        if self.tags and not any(tag in session.metadata.tags for tag in self.tags):
            return False
        if self.active_after and session.last_activity_at < self.active_after:
            return False
        if self.active_before and session.last_activity_at > self.active_before:
            return False
        return True


@dataclass(slots=True)
class ContextSummary:
    """Cheap digest of a session's context for seeding other sessions."""

    session_id: str
    session_type: SessionType
    state: SessionState
    focus: str
    key_decisions: list[str]
    important_artifacts: list[str]
    last_activity: datetime
    message_count: int
    artifact_count: int
    decision_count: int

    @classmethod
    def from_session(cls, session: Session) -> "ContextSummary":
        context = session.context
        return cls(
            session_id=session.id,
            session_type=session.type,
            state=session.state,
            focus=context.current_focus,
            key_decisions=[
                decision.description for decision in context.decisions[-SUMMARY_DECISION_LIMIT:]
            ],
            important_artifacts=[artifact.name for artifact in context.artifacts],
            last_activity=session.last_activity_at,
            message_count=len(context.messages),
            artifact_count=len(context.artifacts),
            decision_count=len(context.decisions),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "session_type": self.session_type.value,
            "state": self.state.value,
            "focus": self.focus,
            "key_decisions": list(self.key_decisions),
            "important_artifacts": list(self.important_artifacts),
            "last_activity": self.last_activity.isoformat(),
            "message_count": self.message_count,
            "artifact_count": self.artifact_count,
            "decision_count": self.decision_count,
        }


@dataclass(slots=True)
class HierarchicalContext:
    session: ContextSummary
    parent_context: ContextSummary | None = None
    child_contexts: list[ContextSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session": self.session.to_dict(),
            "parent_context": self.parent_context.to_dict() if self.parent_context else None,
            "child_contexts": [summary.to_dict() for summary in self.child_contexts],
        }


@dataclass(slots=True)
class SessionHierarchy:
    session: Session
    parent: Session | None = None
    children: list[Session] = field(default_factory=list)


@dataclass(slots=True)
class HierarchyIssue:
    """A parent/child link recorded on only one side."""

    parent_id: str
    child_id: str
    problem: str

    def to_dict(self) -> dict[str, Any]:
        return {"parent_id": self.parent_id, "child_id": self.child_id, "problem": self.problem}


@dataclass(slots=True)
class RelatedSessions:
    session: Session
    parent: Session | None = None
    children: list[Session] = field(default_factory=list)
    siblings: list[Session] = field(default_factory=list)
    predecessors: list[Session] = field(default_factory=list)
    successors: list[Session] = field(default_factory=list)
    inconsistencies: list[HierarchyIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        def brief(session: Session) -> dict[str, Any]:
            return {"id": session.id, "type": session.type.value, "state": session.state.value}

        return {
            "session_id": self.session.id,
            "parent": brief(self.parent) if self.parent else None,
            "children": [brief(item) for item in self.children],
            "siblings": [brief(item) for item in self.siblings],
            "predecessors": [brief(item) for item in self.predecessors],
            "successors": [brief(item) for item in self.successors],
            "inconsistencies": [issue.to_dict() for issue in self.inconsistencies],
        }


@dataclass(slots=True)
class Breadcrumb:
    session_id: str
    name: str
    type: SessionType
    focus: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "type": self.type.value,
            "focus": self.focus,
        }


@dataclass(slots=True)
class TimelineEntry:
    session_id: str
    type: SessionType
    state: SessionState
    start_time: datetime
    end_time: datetime | None
    focus: str
    parent_session_id: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "type": self.type.value,
            "state": self.state.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "focus": self.focus,
            "parent_session_id": self.parent_session_id,
        }


@dataclass(slots=True)
class HierarchyNode:
    session_id: str
    level: int
    children: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "level": self.level, "children": list(self.children)}


@dataclass(slots=True)
class NavigationHistory:
    orchestration_id: str
    timeline: list[TimelineEntry] = field(default_factory=list)
    hierarchy: list[HierarchyNode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "timeline": [entry.to_dict() for entry in self.timeline],
            "hierarchy": [node.to_dict() for node in self.hierarchy],
        }


@dataclass(slots=True)
class OrchestrationSummary:
    orchestration_id: str
    total_sessions: int = 0
    active_sessions: int = 0
    suspended_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    sessions_by_type: dict[str, int] = field(default_factory=dict)
    last_activity: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "suspended_sessions": self.suspended_sessions,
            "completed_sessions": self.completed_sessions,
            "failed_sessions": self.failed_sessions,
            "sessions_by_type": dict(self.sessions_by_type),
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
        }


__all__ = [
    "ArtifactType",
    "Breadcrumb",
    "ContextSummary",
    "HierarchicalContext",
    "HierarchyIssue",
    "HierarchyNode",
    "NavigationHistory",
    "OrchestrationSummary",
    "RelatedSessions",
    "SESSION_TRANSITIONS",
    "Session",
    "SessionArtifact",
    "SessionContext",
    "SessionDecision",
    "SessionHierarchy",
    "SessionMessage",
    "SessionMetadata",
    "SessionQuery",
    "SessionSpec",
    "SessionState",
    "SessionType",
    "ThinkingSession",
    "ThinkingState",
    "ThinkingStep",
    "TimelineEntry",
]
