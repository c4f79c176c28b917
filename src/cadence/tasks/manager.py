"""Task lifecycle, dependency evaluation and graph queries over the file store."""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime
from typing import Any, Callable, Literal, Mapping, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import (
    CorruptionError,
    OrchestrationError,
    RecordValidationError,
    StateTransitionError,
    describe_validation_error,
)
from ..manifests.models import ManifestImportResult, TaskManifest
from ..storage import FileStore, RecordKind
from ..storage.models import BulkOperationReport, Plan, TaskPriority, TaskStatus, short_id
from .graph import DependencyGraph
from .models import (
    DEPENDENCY_RULES,
    PRIORITY_RANK,
    TASK_TRANSITIONS,
    DependencyCheck,
    DependencyGraphView,
    DependencyValidation,
    GraphEdgeView,
    GraphNodeView,
    Task,
    TaskDependency,
    TaskProgress,
    TaskQuery,
    TaskSpec,
    TaskStatistics,
    TaskUpdate,
)
from .plans import PlanSpec, PlanUpdate, apply_plan_update, build_plan

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_REQUIRED_UPDATE_FIELDS = {"name", "priority", "acceptance_criteria", "dependencies", "tags"}
_PLAIN_UPDATE_FIELDS = (
    "name",
    "description",
    "priority",
    "acceptance_criteria",
    "estimation",
    "dependencies",
    "parent_task_id",
    "session_id",
    "plan_id",
    "assignee",
    "tags",
)
_CSV_HEADER = [
    "ID",
    "Name",
    "Description",
    "Status",
    "Priority",
    "Progress",
    "Estimated Hours",
    "Created At",
]


def coerce_input(model: type[ModelT], value: ModelT | Mapping[str, Any]) -> ModelT:
    """Validate caller input, converting pydantic failures to ``RecordValidationError``."""

    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as exc:
        raise RecordValidationError(
            f"Invalid {model.__name__}", describe_validation_error(exc)
        ) from exc


class TaskManager:
    """Create, update and analyse the tasks of an orchestration.

    Every operation reads the current records from the store, applies its
    change and writes the result back before returning. Graph queries work
    on a snapshot taken at the start of the call.
    """

    def __init__(self, store: FileStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or store.now

    @property
    def store(self) -> FileStore:
        return self._store

    # -- task records ------------------------------------------------------

    async def create_task(self, spec: TaskSpec | Mapping[str, Any]) -> Task:
        """Create a ``not_started`` task; every acceptance criterion starts unmet."""

        spec = coerce_input(TaskSpec, spec)
        now = self._clock()
        task_id = spec.id or short_id("task")
        if await self._store.exists(RecordKind.TASK, task_id):
            raise RecordValidationError(f"Task '{task_id}' already exists", ["id: already exists"])

        task = Task(
            id=task_id,
            orchestration_id=spec.orchestration_id,
            name=spec.name,
            description=spec.description,
            priority=spec.priority,
            progress=TaskProgress(last_updated=now),
            acceptance_criteria=[
                criterion.model_copy(update={"met": False, "verified_at": None})
                for criterion in spec.acceptance_criteria
            ],
            estimation=spec.estimation,
            dependencies=spec.dependencies,
            parent_task_id=spec.parent_task_id,
            session_id=spec.session_id,
            plan_id=spec.plan_id,
            assignee=spec.assignee,
            tags=spec.tags,
            metadata=spec.metadata,
            created_at=now,
            updated_at=now,
        )
        saved = await self._store.save(RecordKind.TASK, task)
        if saved.parent_task_id:
            await self._link_to_parent(saved)

        logger.info(
            "Created task",
            extra={
                "task_id": saved.id,
                "orchestration_id": saved.orchestration_id,
                "dependencies": len(saved.dependencies),
            },
        )
        return saved

    async def get_task(self, task_id: str) -> Task:
        return await self._store.require(RecordKind.TASK, task_id)  # type: ignore[return-value]

    async def _link_to_parent(self, task: Task) -> None:
        parent = await self._store.load(RecordKind.TASK, task.parent_task_id)
        if parent is None:
            logger.warning(
                "Parent task not found; task left orphaned",
                extra={"task_id": task.id, "parent_task_id": task.parent_task_id},
            )
            return
        if task.id in parent.child_task_ids:
            return
        linked = parent.model_copy(
            update={"child_task_ids": [*parent.child_task_ids, task.id], "updated_at": self._clock()}
        )
        await self._store.save(RecordKind.TASK, linked)

    async def update_task(self, task_id: str, delta: TaskUpdate | Mapping[str, Any]) -> Task:
        """Merge ``delta`` into the stored task.

        A status change must appear in ``TASK_TRANSITIONS``; asking for the
        current status again is rejected like any other missing transition.
        """

        update = coerce_input(TaskUpdate, delta)
        task = await self.get_task(task_id)
        now = self._clock()
        provided = update.model_fields_set
        changes: dict[str, Any] = {}

        for name in _PLAIN_UPDATE_FIELDS:
            if name not in provided:
                continue
            value = getattr(update, name)
            if value is None and name in _REQUIRED_UPDATE_FIELDS:
                continue
            changes[name] = value
        if "metadata" in provided and update.metadata is not None:
            changes["metadata"] = {**task.metadata, **update.metadata}

        progress_changes: dict[str, Any] = {}
        if "progress" in provided and update.progress is not None:
            progress_changes["completion_percentage"] = update.progress
        if "progress_description" in provided:
            progress_changes["description"] = update.progress_description
        if "milestones" in provided and update.milestones is not None:
            progress_changes["milestones"] = update.milestones

        if "status" in provided and update.status is not None:
            requested = update.status
            allowed = TASK_TRANSITIONS[task.status]
            if requested not in allowed:
                raise StateTransitionError(
                    task.status.value, requested.value, [status.value for status in allowed]
                )
            changes["status"] = requested
            if task.status is TaskStatus.NOT_STARTED:
                changes["started_at"] = now
            if requested is TaskStatus.COMPLETED:
                changes["completed_at"] = now
                progress_changes["completion_percentage"] = 100.0
            if task.status is TaskStatus.CANCELLED and requested is TaskStatus.NOT_STARTED:
                changes["started_at"] = None
                changes["completed_at"] = None

        if progress_changes:
            progress_changes["last_updated"] = now
            changes["progress"] = task.progress.model_copy(update=progress_changes)
        changes["updated_at"] = now

        saved = await self._store.save(RecordKind.TASK, task.model_copy(update=changes))
        reparented = saved.parent_task_id and saved.parent_task_id != task.parent_task_id
        if "parent_task_id" in changes and reparented:
            await self._link_to_parent(saved)

        logger.info(
            "Updated task",
            extra={
                "task_id": saved.id,
                "status": saved.status.value,
                "previous_status": task.status.value,
                "fields": sorted(provided),
            },
        )
        return saved

    async def start_task(self, task_id: str, *, session_id: str | None = None) -> Task:
        delta: dict[str, Any] = {"status": TaskStatus.IN_PROGRESS}
        if session_id is not None:
            delta["session_id"] = session_id
        return await self.update_task(task_id, delta)

    async def complete_task(self, task_id: str) -> Task:
        return await self.update_task(task_id, {"status": TaskStatus.COMPLETED})

    async def verify_criterion(
        self,
        task_id: str,
        criterion_id: str,
        *,
        met: bool,
        notes: str | None = None,
        method: str | None = None,
    ) -> Task:
        """Record the verification outcome for one acceptance criterion."""

        task = await self.get_task(task_id)
        now = self._clock()
        criteria = []
        found = False
        for criterion in task.acceptance_criteria:
            if criterion.id == criterion_id:
                found = True
                criterion = criterion.model_copy(
                    update={
                        "met": met,
                        "verification_notes": notes,
                        "verification_method": method or criterion.verification_method,
                        "verified_at": now,
                    }
                )
            criteria.append(criterion)
        if not found:
            raise RecordValidationError(
                f"Task '{task_id}' has no acceptance criterion '{criterion_id}'",
                [f"criterion_id: {criterion_id}"],
            )
        updated = task.model_copy(update={"acceptance_criteria": criteria, "updated_at": now})
        return await self._store.save(RecordKind.TASK, updated)

    async def query_tasks(self, query: TaskQuery | Mapping[str, Any] | None = None) -> list[Task]:
        """Return matching tasks, newest first, after offset and limit."""

        criteria = coerce_input(TaskQuery, query or {})
        return await self._store.query(
            RecordKind.TASK, criteria.matches, offset=criteria.offset, limit=criteria.limit
        )

    async def _orchestration_tasks(self, orchestration_id: str) -> list[Task]:
        return await self.query_tasks(TaskQuery(orchestration_id=orchestration_id))

    # -- scheduling --------------------------------------------------------

    async def get_next_task(self, orchestration_id: str) -> Task | None:
        """Pick the next ``not_started`` task by a cheap heuristic.

        Tasks without dependencies come first, then higher priority, then the
        oldest. The chosen task's own dependencies are not checked; callers
        confirm them with :meth:`check_dependencies`.
        """

        candidates = await self.query_tasks(
            TaskQuery(orchestration_id=orchestration_id, status=[TaskStatus.NOT_STARTED])
        )
        if not candidates:
            return None
        candidates.sort(
            key=lambda task: (
                0 if not task.dependencies else 1,
                -PRIORITY_RANK[task.priority],
                task.created_at,
                task.id,
            )
        )
        return candidates[0]

    async def _load_dependency(self, task_id: str) -> tuple[Task | None, str | None]:
        try:
            return await self._store.load(RecordKind.TASK, task_id), None  # type: ignore[return-value]
        except CorruptionError:
            return None, f"Dependent task {task_id} is corrupted"
        except RecordValidationError:
            return None, f"Dependent task {task_id} has an invalid id"

    async def check_dependencies(self, task_id: str) -> DependencyCheck:
        """Evaluate each dependency edge of ``task_id`` by its temporal relation."""

        task = await self.get_task(task_id)
        result = DependencyCheck(task_id=task.id, all_satisfied=True)
        for dependency in task.dependencies:
            target, problem = await self._load_dependency(dependency.task_id)
            if target is None:
                result.unsatisfied.append(dependency.task_id)
                result.blocked_by.append(problem or f"Dependent task {dependency.task_id} not found")
                continue
            if target.status in DEPENDENCY_RULES[dependency.type]:
                result.satisfied.append(dependency.task_id)
            else:
                result.unsatisfied.append(dependency.task_id)
                result.blocked_by.append(f"Task {target.name} ({target.status.value})")
        result.all_satisfied = not result.unsatisfied
        return result

    # -- graph analysis ----------------------------------------------------

    async def build_graph(self, orchestration_id: str) -> tuple[DependencyGraph, dict[str, Task]]:
        tasks = await self._orchestration_tasks(orchestration_id)
        return DependencyGraph.from_tasks(tasks), {task.id: task for task in tasks}

    async def validate_dependencies(self, orchestration_id: str) -> DependencyValidation:
        """Report cycles, unknown dependency targets and tasks with a missing parent.

        Findings are advisory; nothing is corrected. Orphaned tasks do not
        make the graph invalid.
        """

        graph, tasks = await self.build_graph(orchestration_id)
        cycles = graph.find_cycles()
        invalid = [str(item) for item in graph.invalid_dependencies]
        orphaned = [
            node
            for node in graph.nodes
            if tasks[node].parent_task_id and tasks[node].parent_task_id not in tasks
        ]
        validation = DependencyValidation(
            orchestration_id=orchestration_id,
            is_valid=not cycles and not invalid,
            cycles=cycles,
            orphaned_tasks=orphaned,
            invalid_dependencies=invalid,
        )
        if not validation.is_valid:
            logger.warning(
                "Dependency problems detected",
                extra={
                    "orchestration_id": orchestration_id,
                    "cycles": len(cycles),
                    "invalid_dependencies": len(invalid),
                },
            )
        return validation

    async def assert_valid_dependencies(self, orchestration_id: str) -> DependencyValidation:
        validation = await self.validate_dependencies(orchestration_id)
        if not validation.is_valid:
            errors = [f"cycle: {' -> '.join(cycle)}" for cycle in validation.cycles]
            errors.extend(f"invalid dependency: {item}" for item in validation.invalid_dependencies)
            raise RecordValidationError(
                f"Orchestration '{orchestration_id}' has invalid dependencies", errors
            )
        return validation

    async def compute_execution_order(self, orchestration_id: str) -> list[Task]:
        """Topological order of the orchestration's tasks; cycle members are left out."""

        graph, tasks = await self.build_graph(orchestration_id)
        return [tasks[node] for node in graph.topological_order()]

    async def compute_levels(self, orchestration_id: str) -> DependencyGraphView:
        graph, tasks = await self.build_graph(orchestration_id)
        levels = graph.levels()
        return DependencyGraphView(
            orchestration_id=orchestration_id,
            nodes=[
                GraphNodeView(
                    id=node,
                    name=tasks[node].name,
                    status=tasks[node].status,
                    level=levels[node],
                )
                for node in graph.nodes
            ],
            edges=[GraphEdgeView(edge.source, edge.target, edge.type) for edge in graph.edges],
        )

    async def get_task_statistics(self, orchestration_id: str) -> TaskStatistics:
        tasks = await self._orchestration_tasks(orchestration_id)
        by_status = {status.value: 0 for status in TaskStatus}
        by_priority = {priority.value: 0 for priority in TaskPriority}
        total_progress = 0.0
        estimated = 0.0
        completed_hours = 0.0
        for task in tasks:
            by_status[task.status.value] += 1
            by_priority[task.priority.value] += 1
            total_progress += task.progress.completion_percentage
            effort = task.estimation.effort_hours if task.estimation else 0.0
            estimated += effort
            if task.status is TaskStatus.COMPLETED:
                completed_hours += effort

        total = len(tasks)
        completed = by_status[TaskStatus.COMPLETED.value]
        return TaskStatistics(
            orchestration_id=orchestration_id,
            total=total,
            by_status=by_status,
            by_priority=by_priority,
            completion_percentage=round(completed / total * 100) if total else 0,
            average_progress=round(total_progress / total) if total else 0,
            estimated_total_hours=estimated,
            completed_hours=completed_hours,
        )

    # -- plans -------------------------------------------------------------

    async def create_plan(self, spec: PlanSpec | Mapping[str, Any]) -> Plan:
        spec = coerce_input(PlanSpec, spec)
        plan = build_plan(spec, self._clock())
        if await self._store.exists(RecordKind.PLAN, plan.id):
            raise RecordValidationError(f"Plan '{plan.id}' already exists", ["id: already exists"])
        saved = await self._store.save(RecordKind.PLAN, plan)
        logger.info(
            "Created plan",
            extra={"plan_id": saved.id, "orchestration_id": saved.orchestration_id},
        )
        return saved

    async def load_plan(self, plan_id: str) -> Plan:
        return await self._store.require(RecordKind.PLAN, plan_id)  # type: ignore[return-value]

    async def update_plan(self, plan_id: str, delta: PlanUpdate | Mapping[str, Any]) -> Plan:
        update = coerce_input(PlanUpdate, delta)
        plan = await self.load_plan(plan_id)
        saved = await self._store.save(RecordKind.PLAN, apply_plan_update(plan, update, self._clock()))
        logger.info("Updated plan", extra={"plan_id": saved.id, "status": saved.status.value})
        return saved

    async def find_plan(self, orchestration_id: str) -> Plan | None:
        """Return the newest plan of the orchestration, if any."""

        plans = await self._store.query(
            RecordKind.PLAN, lambda plan: plan.orchestration_id == orchestration_id, limit=1
        )
        return plans[0] if plans else None

    # -- manifests ---------------------------------------------------------

    async def export_manifest(
        self, orchestration_id: str, format: Literal["json", "csv"] = "json"
    ) -> str:
        """Serialise the orchestration's plan and tasks in creation order."""

        tasks = sorted(
            await self._orchestration_tasks(orchestration_id),
            key=lambda task: (task.created_at, task.id),
        )
        if format == "json":
            plan = await self.find_plan(orchestration_id)
            return json.dumps(
                {
                    "orchestration_id": orchestration_id,
                    "plan": plan.model_dump(mode="json") if plan else None,
                    "tasks": [task.model_dump(mode="json") for task in tasks],
                    "exported_at": self._clock().isoformat(),
                },
                indent=2,
            )
        if format == "csv":
            buffer = io.StringIO()
            writer = csv.writer(buffer, lineterminator="\n")
            writer.writerow(_CSV_HEADER)
            for task in tasks:
                writer.writerow(
                    [
                        task.id,
                        task.name,
                        task.description,
                        task.status.value,
                        task.priority.value,
                        task.progress.completion_percentage,
                        task.estimation.effort_hours if task.estimation else 0,
                        task.created_at.isoformat(),
                    ]
                )
            return buffer.getvalue()
        raise RecordValidationError(f"Unsupported export format '{format}'", [f"format: {format}"])

    async def import_manifest(self, manifest: TaskManifest | Mapping[str, Any]) -> ManifestImportResult:
        """Create the manifest's tasks, replacing manifest keys with real ids.

        Unknown keys and dependency cycles are rejected before anything is
        written. Tasks are created in dependency order.
        """

        manifest = coerce_input(TaskManifest, manifest)
        keys = [task.key for task in manifest.tasks]
        graph = DependencyGraph(keys)
        errors = []
        for entry in manifest.tasks:
            for dependency in entry.depends_on:
                if dependency.task not in graph:
                    errors.append(f"{entry.key}: unknown dependency '{dependency.task}'")
                else:
                    graph.add_edge(dependency.task, entry.key, dependency.type)
        errors.extend(f"cycle: {' -> '.join(cycle)}" for cycle in graph.find_cycles())
        if errors:
            raise RecordValidationError(f"Manifest '{manifest.name}' is invalid", errors)

        plan_id = None
        if manifest.plan is not None:
            plan = await self.create_plan(
                PlanSpec(
                    orchestration_id=manifest.orchestration_id,
                    name=manifest.plan.name,
                    description=manifest.plan.description,
                    metadata={"manifest": manifest.name},
                )
            )
            plan_id = plan.id

        entries = {entry.key: entry for entry in manifest.tasks}
        result = ManifestImportResult(orchestration_id=manifest.orchestration_id, plan_id=plan_id)
        for key in graph.topological_order():
            entry = entries[key]
            task = await self.create_task(
                TaskSpec(
                    orchestration_id=manifest.orchestration_id,
                    name=entry.name,
                    description=entry.description,
                    priority=entry.priority,
                    dependencies=[
                        TaskDependency(task_id=result.task_ids[dependency.task], type=dependency.type)
                        for dependency in entry.depends_on
                    ],
                    acceptance_criteria=entry.acceptance_criteria,
                    estimation=entry.estimation,
                    plan_id=plan_id,
                    assignee=entry.assignee,
                    tags=entry.tags,
                    metadata={**entry.metadata, "manifest_key": key},
                )
            )
            result.task_ids[key] = task.id

        logger.info(
            "Imported task manifest",
            extra={
                "manifest": manifest.name,
                "orchestration_id": manifest.orchestration_id,
                "tasks": len(result.task_ids),
            },
        )
        return result

    # -- destructive -------------------------------------------------------

    async def reset_orchestration(self, orchestration_id: str) -> BulkOperationReport:
        """Back up and delete every task and plan of the orchestration.

        Each record is handled on its own; failures are counted and reported
        rather than aborting the reset.
        """

        report = BulkOperationReport(operation="reset_orchestration")
        targets: list[tuple[RecordKind, str]] = [
            (RecordKind.TASK, task.id) for task in await self._orchestration_tasks(orchestration_id)
        ]
        plans = await self._store.query(
            RecordKind.PLAN, lambda plan: plan.orchestration_id == orchestration_id
        )
        targets.extend((RecordKind.PLAN, plan.id) for plan in plans)

        for kind, record_id in targets:
            if self._store.backups_enabled:
                try:
                    if await self._store.create_backup(kind, record_id, reason="reset") is not None:
                        report.backed_up += 1
                except OrchestrationError as exc:
                    logger.warning(
                        "Backup before reset failed",
                        extra={"kind": kind.value, "id": record_id, "error": str(exc)},
                    )
            try:
                if await self._store.delete(kind, record_id, backup=False):
                    report.removed += 1
                    report.removed_ids.append(record_id)
            except OrchestrationError as exc:
                report.failed += 1
                report.errors.append(f"{kind.value} {record_id}: {exc}")

        remaining_plans = await self._store.query(
            RecordKind.PLAN, lambda plan: plan.orchestration_id == orchestration_id
        )
        report.remaining = len(await self._orchestration_tasks(orchestration_id)) + len(remaining_plans)
        logger.info(
            "Reset orchestration",
            extra={"orchestration_id": orchestration_id, **report.to_dict()},
        )
        return report


__all__ = ["TaskManager", "coerce_input"]
