"""Task records, dependency graphs and plans for Cadence orchestrations."""

from .graph import DependencyGraph, GraphEdge, InvalidDependency
from .manager import TaskManager, coerce_input
from .models import (
    AcceptanceCriterion,
    DependencyCheck,
    DependencyGraphView,
    DependencyType,
    DependencyValidation,
    Task,
    TaskDependency,
    TaskEstimation,
    TaskPriority,
    TaskQuery,
    TaskSpec,
    TaskStatistics,
    TaskStatus,
    TaskUpdate,
)
from .plans import PlanSpec, PlanUpdate

__all__ = [
    "AcceptanceCriterion",
    "DependencyCheck",
    "DependencyGraph",
    "DependencyGraphView",
    "DependencyType",
    "DependencyValidation",
    "GraphEdge",
    "InvalidDependency",
    "PlanSpec",
    "PlanUpdate",
    "Task",
    "TaskDependency",
    "TaskEstimation",
    "TaskManager",
    "TaskPriority",
    "TaskQuery",
    "TaskSpec",
    "TaskStatistics",
    "TaskStatus",
    "TaskUpdate",
    "coerce_input",
]
