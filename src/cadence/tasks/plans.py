"""Plan records: creation input, partial updates and phase bookkeeping."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from ..storage.models import (
    ArchitectureDecision,
    Plan,
    PlanPhase,
    PlanRequirement,
    PlanRisk,
    PlanStatus,
    PlanningPhase,
    TaskEstimation,
    short_id,
)


class PlanSpec(BaseModel):
    orchestration_id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    id: str | None = None
    requirements: list[PlanRequirement] = Field(default_factory=list)
    architecture_decisions: list[ArchitectureDecision] = Field(default_factory=list)
    phases: list[PlanPhase] = Field(default_factory=list)
    risks: list[PlanRisk] = Field(default_factory=list)
    estimation: TaskEstimation | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PlanUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    status: PlanStatus | None = None
    current_phase: PlanningPhase | None = None
    requirements: list[PlanRequirement] | None = None
    architecture_decisions: list[ArchitectureDecision] | None = None
    phases: list[PlanPhase] | None = None
    risks: list[PlanRisk] | None = None
    estimation: TaskEstimation | None = None
    metadata: dict[str, Any] | None = None


def build_plan(spec: PlanSpec, now: datetime) -> Plan:
    return Plan(
        id=spec.id or short_id("plan"),
        orchestration_id=spec.orchestration_id,
        name=spec.name,
        description=spec.description,
        requirements=spec.requirements,
        architecture_decisions=spec.architecture_decisions,
        phases=spec.phases,
        risks=spec.risks,
        estimation=spec.estimation,
        metadata=spec.metadata,
        created_at=now,
        updated_at=now,
    )


def apply_plan_update(plan: Plan, update: PlanUpdate, now: datetime) -> Plan:
    """Merge the explicitly set fields of ``update`` into ``plan``.

    Approval and completion stamp their timestamps the first time they are
    reached; a completed plan also moves to the completed planning phase.
    """

    changes: dict[str, Any] = {name: getattr(update, name) for name in update.model_fields_set}
    if "metadata" in changes:
        changes["metadata"] = {**plan.metadata, **(changes["metadata"] or {})}
    for name in ("name", "status", "current_phase"):
        if name in changes and changes[name] is None:
            changes.pop(name)

    status = changes.get("status")
    if status is PlanStatus.APPROVED and plan.approved_at is None:
        changes["approved_at"] = now
    if status is PlanStatus.COMPLETED:
        if plan.completed_at is None:
            changes["completed_at"] = now
        changes.setdefault("current_phase", PlanningPhase.COMPLETED)

    changes["updated_at"] = now
    return plan.model_copy(update=changes)


__all__ = ["PlanSpec", "PlanUpdate", "apply_plan_update", "build_plan"]
