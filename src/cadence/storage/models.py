"""Record models persisted by the file store.

Sessions, tasks and plans are the three record kinds written to disk. The
task and session packages re-export the models they own so callers rarely
import from here directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def short_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DependencyType(str, Enum):
    FINISH_TO_START = "finish_to_start"
    START_TO_START = "start_to_start"
    FINISH_TO_FINISH = "finish_to_finish"
    START_TO_FINISH = "start_to_finish"


class SessionType(str, Enum):
    PLANNING = "planning"
    TASK = "task"
    VERIFICATION = "verification"
    INTERACTIVE = "interactive"


class SessionState(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


class ThinkingState(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"


class ArtifactType(str, Enum):
    CODE = "code"
    DOCUMENT = "document"
    DIAGRAM = "diagram"
    PLAN = "plan"
    REQUIREMENT = "requirement"
    DELIVERABLE = "deliverable"
    OTHER = "other"


class PlanStatus(str, Enum):
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PlanningPhase(str, Enum):
    REQUIREMENTS_ANALYSIS = "requirements_analysis"
    ARCHITECTURE_DESIGN = "architecture_design"
    TASK_DECOMPOSITION = "task_decomposition"
    VALIDATION = "validation"
    APPROVAL = "approval"
    COMPLETED = "completed"


class RecordModel(BaseModel):
    """Shared behaviour for persisted models: timezone-aware timestamps."""

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: Any):
        if isinstance(value, datetime):
            return _as_utc(value)
        return value


# --- tasks -----------------------------------------------------------------


class TaskDependency(RecordModel):
    """Directed edge: the owning task depends on ``task_id``."""

    task_id: str = Field(..., min_length=1, description="Id of the task this one depends on.")
    type: DependencyType = Field(
        default=DependencyType.FINISH_TO_START,
        description="Temporal relation between the two tasks.",
    )
    delay_minutes: int = Field(default=0, ge=0, description="Lag applied after the relation holds.")
    description: str | None = Field(default=None, description="Why the dependency exists.")


class AcceptanceCriterion(RecordModel):
    id: str = Field(default_factory=lambda: short_id("ac"))
    description: str = Field(..., min_length=1)
    met: bool = Field(default=False, description="Whether verification found the criterion satisfied.")
    verification_method: str | None = None
    verification_notes: str | None = None
    verified_at: datetime | None = None


class TaskEstimation(RecordModel):
    effort_hours: float = Field(default=0.0, ge=0, description="Estimated effort in hours.")
    duration_hours: float | None = Field(default=None, ge=0)
    confidence: float = Field(default=0.5, ge=0, le=1, description="Confidence in [0, 1].")
    method: str = Field(default="expert_judgment")
    notes: str | None = None


class TaskMilestone(RecordModel):
    id: str = Field(default_factory=lambda: short_id("ms"))
    name: str = Field(..., min_length=1)
    completed: bool = False
    completed_at: datetime | None = None


class TaskProgress(RecordModel):
    completion_percentage: float = Field(default=0.0, ge=0, le=100)
    description: str | None = None
    last_updated: datetime = Field(default_factory=utc_now)
    milestones: list[TaskMilestone] = Field(default_factory=list)


class Task(RecordModel):
    """A trackable unit of work inside an orchestration."""

    id: str = Field(..., min_length=1, description="Unique task identifier.")
    orchestration_id: str = Field(..., min_length=1, description="Workflow grouping key.")
    name: str = Field(..., min_length=1)
    description: str = Field(default="")
    status: TaskStatus = Field(default=TaskStatus.NOT_STARTED)
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    progress: TaskProgress = Field(default_factory=TaskProgress)
    acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
    estimation: TaskEstimation | None = None
    dependencies: list[TaskDependency] = Field(default_factory=list)
    parent_task_id: str | None = None
    child_task_ids: list[str] = Field(default_factory=list)
    session_id: str | None = Field(default=None, description="Session currently executing the task.")
    plan_id: str | None = None
    assignee: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None


# --- sessions --------------------------------------------------------------


class SessionMessage(RecordModel):
    id: str = Field(default_factory=lambda: short_id("msg"))
    role: Literal["user", "assistant", "system"] = "user"
    content: str
    timestamp: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionArtifact(RecordModel):
    id: str = Field(default_factory=lambda: short_id("art"))
    name: str = Field(..., min_length=1)
    type: ArtifactType = ArtifactType.OTHER
    content: str | None = None
    path: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SessionDecision(RecordModel):
    id: str = Field(default_factory=lambda: short_id("dec"))
    description: str = Field(..., min_length=1)
    rationale: str | None = None
    alternatives: list[str] = Field(default_factory=list)
    impact: Literal["low", "medium", "high"] | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class ThinkingStep(RecordModel):
    number: int = Field(..., ge=1, description="1-based position in the trace.")
    thought: str
    next_thought_needed: bool = True
    is_revision: bool = False
    revises_step: int | None = Field(default=None, ge=1)
    branch_from_step: int | None = Field(default=None, ge=1)
    branch_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class ThinkingSession(RecordModel):
    """Ordered reasoning trace embedded in a session context."""

    id: str = Field(default_factory=lambda: short_id("think"))
    steps: list[ThinkingStep] = Field(default_factory=list)
    current_step: int = Field(default=0, ge=0)
    total_steps: int = Field(default=0, ge=0)
    state: ThinkingState = ThinkingState.ACTIVE
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class SessionContext(RecordModel):
    messages: list[SessionMessage] = Field(default_factory=list)
    artifacts: list[SessionArtifact] = Field(default_factory=list)
    decisions: list[SessionDecision] = Field(default_factory=list)
    current_focus: str = ""
    sequential_thinking: ThinkingSession | None = None
    variables: dict[str, Any] = Field(default_factory=dict)


class SessionMetadata(RecordModel):
    name: str | None = None
    description: str | None = None
    tags: list[str] = Field(default_factory=list)
    user_metadata: dict[str, Any] = Field(default_factory=dict)


class Session(RecordModel):
    """A bounded execution context with its own lifecycle."""

    id: str = Field(..., min_length=1)
    orchestration_id: str = Field(..., min_length=1)
    type: SessionType
    state: SessionState = SessionState.ACTIVE
    task_id: str | None = None
    parent_session_id: str | None = None
    child_session_ids: list[str] = Field(default_factory=list)
    context: SessionContext = Field(default_factory=SessionContext)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    timestamp: datetime = Field(default_factory=utc_now, description="Creation time.")
    last_activity_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    failure_reason: str | None = None

    @field_validator("child_session_ids")
    @classmethod
    def _dedupe_children(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        ordered: list[str] = []
        for child_id in value:
            if child_id not in seen:
                seen.add(child_id)
                ordered.append(child_id)
        return ordered


# --- plans -----------------------------------------------------------------


class PlanRequirement(RecordModel):
    id: str = Field(default_factory=lambda: short_id("req"))
    description: str = Field(..., min_length=1)
    type: Literal["functional", "non_functional", "constraint"] = "functional"
    priority: TaskPriority = TaskPriority.MEDIUM


class ArchitectureDecision(RecordModel):
    id: str = Field(default_factory=lambda: short_id("adr"))
    title: str = Field(..., min_length=1)
    decision: str
    rationale: str | None = None
    alternatives: list[str] = Field(default_factory=list)


class PlanPhase(RecordModel):
    name: str = Field(..., min_length=1)
    description: str | None = None
    task_ids: list[str] = Field(default_factory=list)


class PlanRisk(RecordModel):
    id: str = Field(default_factory=lambda: short_id("risk"))
    description: str = Field(..., min_length=1)
    impact: Literal["low", "medium", "high"] = "medium"
    probability: float = Field(default=0.5, ge=0, le=1)
    mitigation: str | None = None


class Plan(RecordModel):
    """Planning record tying requirements and phases to an orchestration."""

    id: str = Field(..., min_length=1)
    orchestration_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    status: PlanStatus = PlanStatus.DRAFT
    current_phase: PlanningPhase = PlanningPhase.REQUIREMENTS_ANALYSIS
    requirements: list[PlanRequirement] = Field(default_factory=list)
    architecture_decisions: list[ArchitectureDecision] = Field(default_factory=list)
    phases: list[PlanPhase] = Field(default_factory=list)
    risks: list[PlanRisk] = Field(default_factory=list)
    estimation: TaskEstimation | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    approved_at: datetime | None = None
    completed_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- record kinds ----------------------------------------------------------


class RecordKind(str, Enum):
    """The three record kinds held by the store."""

    SESSION = "session"
    TASK = "task"
    PLAN = "plan"

    @property
    def model(self) -> type[RecordModel]:
        return _KIND_MODELS[self]

    @property
    def directory(self) -> str:
        return f"{self.value}s"

    @property
    def sort_field(self) -> str:
        return "timestamp" if self is RecordKind.SESSION else "created_at"


_KIND_MODELS: dict[RecordKind, type[RecordModel]] = {
    RecordKind.SESSION: Session,
    RecordKind.TASK: Task,
    RecordKind.PLAN: Plan,
}


@dataclass(slots=True)
class BulkOperationReport:
    """Counts reported by destructive bulk operations; partial success is expected."""

    operation: str
    backed_up: int = 0
    removed: int = 0
    failed: int = 0
    remaining: int = 0
    errors: list[str] = field(default_factory=list)
    removed_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "backed_up": self.backed_up,
            "removed": self.removed,
            "failed": self.failed,
            "remaining": self.remaining,
            "errors": list(self.errors),
            "removed_ids": list(self.removed_ids),
        }


__all__ = [
    "AcceptanceCriterion",
    "ArchitectureDecision",
    "ArtifactType",
    "BulkOperationReport",
    "DependencyType",
    "Plan",
    "PlanPhase",
    "PlanRequirement",
    "PlanRisk",
    "PlanStatus",
    "PlanningPhase",
    "RecordKind",
    "RecordModel",
    "Session",
    "SessionArtifact",
    "SessionContext",
    "SessionDecision",
    "SessionMessage",
    "SessionMetadata",
    "SessionState",
    "SessionType",
    "Task",
    "TaskDependency",
    "TaskEstimation",
    "TaskMilestone",
    "TaskPriority",
    "TaskProgress",
    "TaskStatus",
    "ThinkingSession",
    "ThinkingState",
    "ThinkingStep",
    "short_id",
    "utc_now",
]
