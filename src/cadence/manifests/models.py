"""YAML task manifest schema handed over by planning collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from ..storage.models import DependencyType, TaskEstimation, TaskPriority


class ManifestDependency(BaseModel):
    task: str = Field(..., min_length=1, description="Manifest-local key of the prerequisite task.")
    type: DependencyType = Field(default=DependencyType.FINISH_TO_START)


class ManifestTask(BaseModel):
    """One task entry; ``key`` only has meaning inside its manifest."""

    key: str = Field(..., description="Manifest-local identifier referenced by depends_on.")
    name: str = Field(..., min_length=1)
    description: str = ""
    priority: TaskPriority = TaskPriority.MEDIUM
    acceptance_criteria: list[str] = Field(default_factory=list)
    estimation: TaskEstimation | None = None
    tags: list[str] = Field(default_factory=list)
    assignee: str | None = None
    depends_on: list[ManifestDependency] = Field(
        default_factory=list,
        description="Prerequisites as keys or {task, type} mappings.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("key")
    @classmethod
    def _normalize_key(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Manifest task key must not be empty")
        return normalized

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if isinstance(value, (list, tuple)):
            return [{"task": item} if isinstance(item, str) else item for item in value]
        raise TypeError("depends_on must be a key, a list of keys or a list of {task, type} mappings")

    @field_validator("acceptance_criteria", "tags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return list(value)
        raise TypeError("acceptance_criteria and tags must be sequences of strings")


class ManifestPlan(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class TaskManifest(BaseModel):
    """A named set of tasks for one orchestration."""

    name: str = Field(..., min_length=1, description="Manifest name; defaults to the file stem.")
    orchestration_id: str = Field(..., min_length=1)
    plan: ManifestPlan | None = None
    tasks: list[ManifestTask] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_keys(self) -> "TaskManifest":
        seen: set[str] = set()
        duplicates = []
        for task in self.tasks:
            if task.key in seen:
                duplicates.append(task.key)
            seen.add(task.key)
        if duplicates:
            raise ValueError(f"Duplicate task keys: {', '.join(sorted(set(duplicates)))}")
        return self


@dataclass(slots=True)
class ManifestImportResult:
    orchestration_id: str
    plan_id: str | None
    task_ids: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orchestration_id": self.orchestration_id,
            "plan_id": self.plan_id,
            "task_ids": dict(self.task_ids),
            "created": len(self.task_ids),
        }


__all__ = [
    "ManifestDependency",
    "ManifestImportResult",
    "ManifestPlan",
    "ManifestTask",
    "TaskManifest",
]
