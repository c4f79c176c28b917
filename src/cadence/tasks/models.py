"""Task inputs, transition rules and structured results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..storage.models import (
    AcceptanceCriterion,
    DependencyType,
    Task,
    TaskDependency,
    TaskEstimation,
    TaskMilestone,
    TaskPriority,
    TaskProgress,
    TaskStatus,
)

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.NOT_STARTED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.BLOCKED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.BLOCKED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.NOT_STARTED}),
}

PRIORITY_RANK: dict[TaskPriority, int] = {
    TaskPriority.CRITICAL: 4,
    TaskPriority.HIGH: 3,
    TaskPriority.MEDIUM: 2,
    TaskPriority.LOW: 1,
}

# Statuses of the dependency target that satisfy each relation.
_FINISHED = frozenset({TaskStatus.COMPLETED})
_STARTED = frozenset({TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED})
DEPENDENCY_RULES: dict[DependencyType, frozenset[TaskStatus]] = {
    DependencyType.FINISH_TO_START: _FINISHED,
    DependencyType.START_TO_START: _STARTED,
    DependencyType.FINISH_TO_FINISH: _FINISHED,
    DependencyType.START_TO_FINISH: _STARTED,
}


def _coerce_dependencies(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [{"task_id": item} if isinstance(item, str) else item for item in value]
    return value


def _coerce_criteria(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [{"description": item} if isinstance(item, str) else item for item in value]
    return value


class TaskSpec(BaseModel):
    """Input accepted by :meth:`TaskManager.create_task`."""

    orchestration_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    id: str | None = Field(default=None, description="Explicit id; generated when omitted.")
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: list[TaskDependency] = Field(
        default_factory=list,
        description="Dependencies as task ids or {task_id, type} mappings.",
    )
    acceptance_criteria: list[AcceptanceCriterion] = Field(default_factory=list)
    estimation: TaskEstimation | None = None
    parent_task_id: str | None = None
    session_id: str | None = None
    plan_id: str | None = None
    assignee: str | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value: Any):
        return _coerce_dependencies(value)

    @field_validator("acceptance_criteria", mode="before")
    @classmethod
    def _normalize_criteria(cls, value: Any):
        return _coerce_criteria(value)


class TaskUpdate(BaseModel):
    """Partial update; only fields explicitly provided are applied."""

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: TaskStatus | None = None
    priority: TaskPriority | None = None
    progress: float | None = Field(default=None, ge=0, le=100)
    progress_description: str | None = None
    milestones: list[TaskMilestone] | None = None
    acceptance_criteria: list[AcceptanceCriterion] | None = None
    estimation: TaskEstimation | None = None
    dependencies: list[TaskDependency] | None = None
    parent_task_id: str | None = None
    session_id: str | None = None
    plan_id: str | None = None
    assignee: str | None = None
    tags: list[str] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("dependencies", mode="before")
    @classmethod
    def _normalize_dependencies(cls, value: Any):
        return None if value is None else _coerce_dependencies(value)

    @field_validator("acceptance_criteria", mode="before")
    @classmethod
    def _normalize_criteria(cls, value: Any):
        return None if value is None else _coerce_criteria(value)


class TaskQuery(BaseModel):
    orchestration_id: str | None = None
    status: list[TaskStatus] | None = None
    priority: list[TaskPriority] | None = None
    parent_task_id: str | None = None
    assignee: str | None = None
    tags: list[str] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    offset: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=1)

    @field_validator("status", "priority", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None or isinstance(value, (list, tuple, set, frozenset)):
            return value
        return [value]

    @field_validator("created_after", "created_before")
    @classmethod
    def _assume_utc(cls, value: datetime | None):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, task: Task) -> bool:
        if self.orchestration_id and task.orchestration_id != self.orchestration_id:
            return False
        if self.status and task.status not in self.status:
            return False
        if self.priority and task.priority not in self.priority:
            return False
        if self.parent_task_id and task.parent_task_id != self.parent_task_id:
            return False
        if self.assignee and task.assignee != self.assignee:
            return False
        if self.tags and not any(tag in task.tags for tag in self.tags):
            return False
        if self.created_after and task.created_at < self.created_after:
            return False
        if self.created_before and task.created_at > self.created_before:
            return False
        return True


@dataclass(slots=True)
class DependencyCheck:
    task_id: str
    all_satisfied: bool
    satisfied: list[str] = field(default_factory=list)
    unsatisfied: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "all_satisfied": self.all_satisfied,
            "satisfied": list(self.satisfied),
            "unsatisfied": list(self.unsatisfied),
            "blocked_by": list(self.blocked_by),
        }


@dataclass(slots=True)
class DependencyValidation:
    orchestration_id: str
    is_valid: bool
    cycles: list[list[str]] = field(default_factory=list)
    orphaned_tasks: list[str] = field(default_factory=list)
    invalid_dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "is_valid": self.is_valid,
            "cycles": [list(cycle) for cycle in self.cycles],
            "orphaned_tasks": list(self.orphaned_tasks),
            "invalid_dependencies": list(self.invalid_dependencies),
        }


@dataclass(slots=True)
class GraphNodeView:
    id: str
    name: str
    status: TaskStatus
    level: int


@dataclass(slots=True)
class GraphEdgeView:
    source: str
    target: str
    type: DependencyType


@dataclass(slots=True)
class DependencyGraphView:
    """Layered view of an orchestration's task graph for rendering and export."""

    orchestration_id: str
    nodes: list[GraphNodeView] = field(default_factory=list)
    edges: list[GraphEdgeView] = field(default_factory=list)

    def by_level(self) -> dict[int, list[str]]:
        layers: dict[int, list[str]] = {}
        for node in self.nodes:
            layers.setdefault(node.level, []).append(node.id)
        return dict(sorted(layers.items()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "nodes": [
                {"id": node.id, "name": node.name, "status": node.status.value, "level": node.level}
                for node in self.nodes
            ],
            "edges": [
                {"from": edge.source, "to": edge.target, "type": edge.type.value}
                for edge in self.edges
            ],
            "levels": {str(level): ids for level, ids in self.by_level().items()},
        }


@dataclass(slots=True)
class TaskStatistics:
    orchestration_id: str
    total: int
    by_status: dict[str, int]
    by_priority: dict[str, int]
    completion_percentage: int
    average_progress: int
    estimated_total_hours: float
    completed_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_priority": dict(self.by_priority),
            "completion_percentage": self.completion_percentage,
            "average_progress": self.average_progress,
            "estimated_total_hours": self.estimated_total_hours,
            "completed_hours": self.completed_hours,
        }


__all__ = [
    "AcceptanceCriterion",
    "DEPENDENCY_RULES",
    "DependencyCheck",
    "DependencyGraphView",
    "DependencyType",
    "DependencyValidation",
    "GraphEdgeView",
    "GraphNodeView",
    "PRIORITY_RANK",
    "TASK_TRANSITIONS",
    "Task",
    "TaskDependency",
    "TaskEstimation",
    "TaskMilestone",
    "TaskPriority",
    "TaskProgress",
    "TaskQuery",
    "TaskSpec",
    "TaskStatistics",
    "TaskStatus",
    "TaskUpdate",
]
