"""Session lifecycle, context accumulation and hierarchy navigation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Mapping, TypeVar

from ..errors import (
    HierarchyError,
    NotFoundError,
    OrchestrationError,
    RecordValidationError,
    StateTransitionError,
)
from ..storage import FileStore, RecordKind
from ..storage.models import BulkOperationReport, short_id
from ..tasks.manager import coerce_input
from .models import (
    SESSION_TRANSITIONS,
    ArtifactType,
    Breadcrumb,
    ContextSummary,
    HierarchicalContext,
    HierarchyIssue,
    HierarchyNode,
    NavigationHistory,
    OrchestrationSummary,
    RelatedSessions,
    Session,
    SessionArtifact,
    SessionContext,
    SessionDecision,
    SessionHierarchy,
    SessionMessage,
    SessionQuery,
    SessionSpec,
    SessionState,
    SessionType,
    ThinkingSession,
    ThinkingState,
    ThinkingStep,
    TimelineEntry,
)

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

_FINISHED_STATES = (SessionState.COMPLETED, SessionState.FAILED)


class SessionRegistry:
    """Create sessions, drive their state machine and answer hierarchy queries.

    Every mutation loads the full session, changes it, stamps
    ``last_activity_at`` and writes the whole record back. Hierarchy
    queries are derived from a scan of the orchestration's sessions.
    """

    def __init__(self, store: FileStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or store.now

    @property
    def store(self) -> FileStore:
        return self._store

    # -- records -----------------------------------------------------------

    async def get_session(self, session_id: str) -> Session | None:
        return await self._store.load(RecordKind.SESSION, session_id)  # type: ignore[return-value]

    async def require_session(self, session_id: str) -> Session:
        return await self._store.require(RecordKind.SESSION, session_id)  # type: ignore[return-value]

    async def create_session(self, spec: SessionSpec | Mapping[str, Any]) -> Session:
        """Create an active session and register it with its parent.

        The child is written first and the parent second. If the second
        write fails the child stays on disk without a parent listing; that
        state is reported through ``HierarchyError`` and can be reconciled
        with :meth:`repair_hierarchy`.
        """

        spec = coerce_input(SessionSpec, spec)
        now = self._clock()
        session_id = spec.id or short_id(spec.type.value)
        if await self._store.exists(RecordKind.SESSION, session_id):
            raise RecordValidationError(f"Session '{session_id}' already exists", ["id: already exists"])

        parent_id = spec.parent_session_id
        if parent_id:
            parent = await self.get_session(parent_id)
            if parent is None:
                raise NotFoundError("session", parent_id)
            if parent.orchestration_id != spec.orchestration_id:
                raise RecordValidationError(
                    "Child session must belong to its parent's orchestration",
                    [
                        f"orchestration_id: expected {parent.orchestration_id}, "
                        f"got {spec.orchestration_id}"
                    ],
                )

        session = Session(
            id=session_id,
            orchestration_id=spec.orchestration_id,
            type=spec.type,
            state=SessionState.ACTIVE,
            task_id=spec.task_id,
            parent_session_id=parent_id,
            context=spec.context or SessionContext(),
            metadata=spec.metadata,
            timestamp=now,
            last_activity_at=now,
        )
        saved: Session = await self._store.save(RecordKind.SESSION, session)

        if parent_id:
            try:
                await self._attach_child(parent_id, saved.id)
            except OrchestrationError as exc:
                logger.error(
                    "Failed to register child session with parent",
                    extra={"parent_id": parent_id, "child_id": saved.id, "error": str(exc)},
                )
                raise HierarchyError(parent_id, saved.id, cause=exc) from exc

        logger.info(
            "Created session",
            extra={
                "session_id": saved.id,
                "session_type": saved.type.value,
                "orchestration_id": saved.orchestration_id,
                "parent_id": parent_id,
            },
        )
        return saved

    async def _attach_child(self, parent_id: str, child_id: str) -> None:
        parent = await self.require_session(parent_id)
        if child_id in parent.child_session_ids:
            return
        parent.child_session_ids.append(child_id)
        parent.last_activity_at = self._clock()
        await self._store.save(RecordKind.SESSION, parent)

    async def _mutate(
        self,
        session_id: str,
        change: Callable[[Session, datetime], ResultT],
    ) -> ResultT:
        session = await self.require_session(session_id)
        now = self._clock()
        result = change(session, now)
        session.last_activity_at = now
        await self._store.save(RecordKind.SESSION, session)
        return result

    # -- state machine -----------------------------------------------------

    async def update_state(
        self,
        session_id: str,
        new_state: SessionState | str,
        reason: str | None = None,
    ) -> Session:
        """Move a session through its lifecycle.

        Repeating the current state only refreshes ``last_activity_at``;
        ``completed_at`` and ``failure_reason`` keep their first values.
        """

        try:
            requested = SessionState(new_state)
        except ValueError as exc:
            raise RecordValidationError(
                f"Unknown session state {new_state!r}", [f"state: {new_state}"]
            ) from exc

        session = await self.require_session(session_id)
        now = self._clock()
        previous = session.state

        if requested is not previous:
            allowed = SESSION_TRANSITIONS[previous]
            if requested not in allowed:
                raise StateTransitionError(
                    previous.value, requested.value, sorted(state.value for state in allowed)
                )
            session.state = requested
            if requested is SessionState.COMPLETED:
                session.completed_at = now
            elif requested is SessionState.FAILED:
                session.failure_reason = reason or "unspecified"
            elif previous is SessionState.FAILED:
                session.failure_reason = None

        session.last_activity_at = now
        saved: Session = await self._store.save(RecordKind.SESSION, session)
        if requested is not previous:
            logger.info(
                "Session state changed",
                extra={
                    "session_id": session_id,
                    "from_state": previous.value,
                    "to_state": requested.value,
                    "reason": reason,
                },
            )
        return saved

    # -- context -----------------------------------------------------------

    async def update_focus(self, session_id: str, focus: str) -> Session:
        def change(session: Session, now: datetime) -> Session:
            session.context.current_focus = focus
            return session

        return await self._mutate(session_id, change)

    async def update_metadata(
        self,
        session_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        tags: list[str] | None = None,
        user_metadata: dict[str, Any] | None = None,
    ) -> Session:
        def change(session: Session, now: datetime) -> Session:
            metadata = session.metadata
            if name is not None:
                metadata.name = name
            if description is not None:
                metadata.description = description
            if tags is not None:
                metadata.tags = list(tags)
            if user_metadata:
                metadata.user_metadata = {**metadata.user_metadata, **user_metadata}
            return session

        return await self._mutate(session_id, change)

    async def add_message(
        self,
        session_id: str,
        content: str,
        *,
        role: str = "user",
        metadata: dict[str, Any] | None = None,
    ) -> SessionMessage:
        def change(session: Session, now: datetime) -> SessionMessage:
            message = SessionMessage(role=role, content=content, timestamp=now, metadata=metadata or {})
            session.context.messages.append(message)
            return message

        return await self._mutate(session_id, change)

    async def add_artifact(
        self,
        session_id: str,
        name: str,
        *,
        type: ArtifactType | str = ArtifactType.OTHER,
        content: str | None = None,
        path: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionArtifact:
        def change(session: Session, now: datetime) -> SessionArtifact:
            artifact = SessionArtifact(
                name=name,
                type=type,
                content=content,
                path=path,
                created_at=now,
                updated_at=now,
                metadata=metadata or {},
            )
            session.context.artifacts.append(artifact)
            return artifact

        return await self._mutate(session_id, change)

    async def update_artifact(
        self,
        session_id: str,
        artifact_id: str,
        *,
        content: str | None = None,
        path: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SessionArtifact:
        def change(session: Session, now: datetime) -> SessionArtifact:
            for index, artifact in enumerate(session.context.artifacts):
                if artifact.id != artifact_id:
                    continue
                updates: dict[str, Any] = {"updated_at": now}
                if content is not None:
                    updates["content"] = content
                if path is not None:
                    updates["path"] = path
                if metadata:
                    updates["metadata"] = {**artifact.metadata, **metadata}
                updated = artifact.model_copy(update=updates)
                session.context.artifacts[index] = updated
                return updated
            raise NotFoundError("artifact", artifact_id)

        return await self._mutate(session_id, change)

    async def add_decision(
        self,
        session_id: str,
        description: str,
        *,
        rationale: str | None = None,
        alternatives: Iterable[str] = (),
        impact: str | None = None,
    ) -> SessionDecision:
        def change(session: Session, now: datetime) -> SessionDecision:
            decision = SessionDecision(
                description=description,
                rationale=rationale,
                alternatives=list(alternatives),
                impact=impact,
                timestamp=now,
            )
            session.context.decisions.append(decision)
            return decision

        return await self._mutate(session_id, change)

    async def set_variable(self, session_id: str, key: str, value: Any) -> Session:
        def change(session: Session, now: datetime) -> Session:
            session.context.variables[key] = value
            return session

        return await self._mutate(session_id, change)

    async def get_variable(self, session_id: str, key: str, default: Any = None) -> Any:
        session = await self.require_session(session_id)
        return session.context.variables.get(key, default)

    # -- thinking traces ---------------------------------------------------

    @staticmethod
    def _open_trace(session: Session, *, operation: str) -> ThinkingSession:
        trace = session.context.sequential_thinking
        if trace is None:
            raise StateTransitionError(
                "none",
                operation,
                message=f"Session '{session.id}' has no thinking session",
            )
        if trace.state is ThinkingState.COMPLETED:
            raise StateTransitionError(
                trace.state.value,
                operation,
                message=f"Thinking session '{trace.id}' is already completed",
            )
        return trace

    async def start_thinking(
        self, session_id: str, metadata: dict[str, Any] | None = None
    ) -> ThinkingSession:
        """Embed a fresh reasoning trace, replacing any previous one."""

        def change(session: Session, now: datetime) -> ThinkingSession:
            trace = ThinkingSession(total_steps=1, metadata=metadata or {}, started_at=now)
            session.context.sequential_thinking = trace
            return trace

        return await self._mutate(session_id, change)

    async def add_thinking_step(
        self,
        session_id: str,
        thought: str,
        *,
        next_thought_needed: bool = True,
        total_steps: int | None = None,
        is_revision: bool = False,
        revises_step: int | None = None,
        branch_from_step: int | None = None,
        branch_id: str | None = None,
    ) -> ThinkingStep:
        """Append a step; a paused trace becomes active again."""

        def change(session: Session, now: datetime) -> ThinkingStep:
            trace = self._open_trace(session, operation="add_step")
            step = ThinkingStep(
                number=len(trace.steps) + 1,
                thought=thought,
                next_thought_needed=next_thought_needed,
                is_revision=is_revision,
                revises_step=revises_step,
                branch_from_step=branch_from_step,
                branch_id=branch_id,
                timestamp=now,
            )
            trace.steps.append(step)
            trace.current_step = step.number
            trace.total_steps = max(trace.total_steps, step.number, total_steps or 0)
            trace.state = ThinkingState.ACTIVE
            return step

        return await self._mutate(session_id, change)

    async def pause_thinking(self, session_id: str) -> ThinkingSession:
        def change(session: Session, now: datetime) -> ThinkingSession:
            trace = self._open_trace(session, operation="pause")
            trace.state = ThinkingState.PAUSED
            return trace

        return await self._mutate(session_id, change)

    async def complete_thinking(self, session_id: str) -> ThinkingSession:
        def change(session: Session, now: datetime) -> ThinkingSession:
            trace = self._open_trace(session, operation="complete")
            trace.state = ThinkingState.COMPLETED
            trace.completed_at = now
            return trace

        return await self._mutate(session_id, change)

    # -- queries -----------------------------------------------------------

    async def query_sessions(
        self, query: SessionQuery | Mapping[str, Any] | None = None
    ) -> list[Session]:
        """Return matching sessions, newest first, after offset and limit."""

        criteria = coerce_input(SessionQuery, query or {})
        return await self._store.query(
            RecordKind.SESSION, criteria.matches, offset=criteria.offset, limit=criteria.limit
        )

    async def get_active_sessions(self, orchestration_id: str) -> list[Session]:
        return await self.query_sessions(
            SessionQuery(orchestration_id=orchestration_id, state=[SessionState.ACTIVE])
        )

    async def _orchestration_sessions(self, orchestration_id: str) -> list[Session]:
        sessions = await self.query_sessions(SessionQuery(orchestration_id=orchestration_id))
        return sorted(sessions, key=lambda session: (session.timestamp, session.id))

    async def get_session_hierarchy(self, session_id: str) -> SessionHierarchy:
        session = await self.require_session(session_id)
        parent = await self.get_session(session.parent_session_id) if session.parent_session_id else None
        children = []
        for child_id in session.child_session_ids:
            child = await self.get_session(child_id)
            if child is not None:
                children.append(child)
        return SessionHierarchy(session=session, parent=parent, children=children)

    async def get_session_chain(self, session_id: str) -> list[Session]:
        """Sessions from the root down to ``session_id``, following parent links."""

        chain: list[Session] = []
        seen: set[str] = set()
        current: Session | None = await self.require_session(session_id)
        while current is not None and current.id not in seen:
            seen.add(current.id)
            chain.append(current)
            if not current.parent_session_id:
                break
            current = await self.get_session(current.parent_session_id)
        chain.reverse()
        return chain

    async def get_session_breadcrumbs(self, session_id: str) -> list[Breadcrumb]:
        return [
            Breadcrumb(
                session_id=session.id,
                name=session.metadata.name or f"{session.type.value} session",
                type=session.type,
                focus=session.context.current_focus,
            )
            for session in await self.get_session_chain(session_id)
        ]

    @staticmethod
    def _link_issues(sessions: Iterable[Session]) -> list[HierarchyIssue]:
        by_id = {session.id: session for session in sessions}
        issues: list[HierarchyIssue] = []
        for session in by_id.values():
            for child_id in session.child_session_ids:
                child = by_id.get(child_id)
                if child is None:
                    issues.append(HierarchyIssue(session.id, child_id, "listed child does not exist"))
                elif child.parent_session_id != session.id:
                    issues.append(
                        HierarchyIssue(session.id, child_id, "listed child points at another parent")
                    )
            parent_id = session.parent_session_id
            if not parent_id:
                continue
            parent = by_id.get(parent_id)
            if parent is None:
                issues.append(HierarchyIssue(parent_id, session.id, "parent session does not exist"))
            elif session.id not in parent.child_session_ids:
                issues.append(HierarchyIssue(parent_id, session.id, "child missing from parent listing"))
        return issues

    async def find_related_sessions(self, session_id: str) -> RelatedSessions:
        """Parent, children, siblings and time-adjacent sessions of one session.

        Children are found through their ``parent_session_id`` back-reference;
        links recorded on only one side are returned as ``inconsistencies``.
        """

        session = await self.require_session(session_id)
        others = await self._orchestration_sessions(session.orchestration_id)
        by_id = {item.id: item for item in others}
        by_id[session.id] = session

        parent = by_id.get(session.parent_session_id) if session.parent_session_id else None
        children = [item for item in others if item.parent_session_id == session.id]
        siblings = (
            [
                item
                for item in others
                if item.parent_session_id == session.parent_session_id and item.id != session.id
            ]
            if session.parent_session_id
            else []
        )
        predecessors = [
            item
            for item in others
            if item.id != session.id and item.completed_at and item.completed_at <= session.timestamp
        ]
        successors = (
            [
                item
                for item in others
                if item.id != session.id and item.timestamp >= session.completed_at
            ]
            if session.completed_at
            else []
        )

        inconsistencies = [
            issue
            for issue in self._link_issues(by_id.values())
            if session.id in (issue.parent_id, issue.child_id)
        ]
        if inconsistencies:
            logger.warning(
                "Hierarchy inconsistency detected",
                extra={"session_id": session.id, "issues": [issue.to_dict() for issue in inconsistencies]},
            )
        return RelatedSessions(
            session=session,
            parent=parent,
            children=children,
            siblings=siblings,
            predecessors=predecessors,
            successors=successors,
            inconsistencies=inconsistencies,
        )

    async def get_session_navigation_history(self, orchestration_id: str) -> NavigationHistory:
        """Timeline by start time plus a depth-first hierarchy from root sessions."""

        sessions = await self._orchestration_sessions(orchestration_id)
        timeline = [
            TimelineEntry(
                session_id=session.id,
                type=session.type,
                state=session.state,
                start_time=session.timestamp,
                end_time=session.completed_at,
                focus=session.context.current_focus,
                parent_session_id=session.parent_session_id,
            )
            for session in sessions
        ]

        children_of: dict[str, list[str]] = {}
        for session in sessions:
            if session.parent_session_id:
                children_of.setdefault(session.parent_session_id, []).append(session.id)

        hierarchy: list[HierarchyNode] = []
        visited: set[str] = set()

        def descend(node_id: str, level: int) -> None:
            if node_id in visited:
                return
            visited.add(node_id)
            children = children_of.get(node_id, [])
            hierarchy.append(HierarchyNode(session_id=node_id, level=level, children=list(children)))
            for child_id in children:
                descend(child_id, level + 1)

        for session in sessions:
            if not session.parent_session_id:
                descend(session.id, 0)

        return NavigationHistory(orchestration_id=orchestration_id, timeline=timeline, hierarchy=hierarchy)

    async def get_orchestration_summary(self, orchestration_id: str) -> OrchestrationSummary:
        summary = OrchestrationSummary(
            orchestration_id=orchestration_id,
            sessions_by_type={session_type.value: 0 for session_type in SessionType},
        )
        for session in await self.query_sessions(SessionQuery(orchestration_id=orchestration_id)):
            summary.total_sessions += 1
            if session.state is SessionState.ACTIVE:
                summary.active_sessions += 1
            elif session.state is SessionState.SUSPENDED:
                summary.suspended_sessions += 1
            elif session.state is SessionState.COMPLETED:
                summary.completed_sessions += 1
            else:
                summary.failed_sessions += 1
            summary.sessions_by_type[session.type.value] += 1
            if summary.last_activity is None or session.last_activity_at > summary.last_activity:
                summary.last_activity = session.last_activity_at
        return summary

    async def get_context_summary(self, session_id: str) -> ContextSummary:
        return ContextSummary.from_session(await self.require_session(session_id))

    async def get_hierarchical_context(self, session_id: str) -> HierarchicalContext:
        """Summaries of the session, its parent and its children, without message logs."""

        session = await self.require_session(session_id)
        parent = await self.get_session(session.parent_session_id) if session.parent_session_id else None
        siblings = await self._orchestration_sessions(session.orchestration_id)
        children = [item for item in siblings if item.parent_session_id == session.id]
        return HierarchicalContext(
            session=ContextSummary.from_session(session),
            parent_context=ContextSummary.from_session(parent) if parent else None,
            child_contexts=[ContextSummary.from_session(child) for child in children],
        )

    # -- hierarchy maintenance ---------------------------------------------

    async def _scope(self, orchestration_id: str | None) -> list[Session]:
        if orchestration_id is None:
            return await self.query_sessions()
        return await self._orchestration_sessions(orchestration_id)

    async def find_hierarchy_inconsistencies(
        self, orchestration_id: str | None = None
    ) -> list[HierarchyIssue]:
        return self._link_issues(await self._scope(orchestration_id))

    async def repair_hierarchy(self, orchestration_id: str | None = None) -> list[HierarchyIssue]:
        """Rewrite ``child_session_ids`` to match the children's back-references.

        Returns the issues that were repaired. Children whose parent no
        longer exists are left as they are and are not part of the result.
        """

        sessions = await self._scope(orchestration_id)
        issues = self._link_issues(sessions)
        children_of: dict[str, list[Session]] = {}
        for session in sorted(sessions, key=lambda item: (item.timestamp, item.id)):
            if session.parent_session_id:
                children_of.setdefault(session.parent_session_id, []).append(session)

        repaired_parents: set[str] = set()
        for session in sessions:
            actual = [child.id for child in children_of.get(session.id, [])]
            kept = [child_id for child_id in session.child_session_ids if child_id in actual]
            expected = kept + [child_id for child_id in actual if child_id not in kept]
            if expected == session.child_session_ids:
                continue
            current = await self.require_session(session.id)
            current.child_session_ids = expected
            current.last_activity_at = self._clock()
            await self._store.save(RecordKind.SESSION, current)
            repaired_parents.add(session.id)

        repaired = [issue for issue in issues if issue.parent_id in repaired_parents]
        if repaired:
            logger.info(
                "Repaired session hierarchy",
                extra={"orchestration_id": orchestration_id, "repaired": len(repaired)},
            )
        return repaired

    # -- destructive -------------------------------------------------------

    async def delete_session(self, session_id: str, *, cascade: bool = True) -> list[str]:
        """Delete a session, detach it from its parent and optionally its children.

        Returns the ids actually removed.
        """

        removed: list[str] = []
        session = await self.get_session(session_id)
        if session is None:
            return removed

        if session.parent_session_id:
            parent = await self.get_session(session.parent_session_id)
            if parent is not None and session_id in parent.child_session_ids:
                parent.child_session_ids.remove(session_id)
                parent.last_activity_at = self._clock()
                await self._store.save(RecordKind.SESSION, parent)

        pending = [session_id]
        seen: set[str] = set()
        while pending:
            current_id = pending.pop()
            if current_id in seen:
                continue
            seen.add(current_id)
            current = await self.get_session(current_id)
            if current is None:
                continue
            if cascade:
                pending.extend(current.child_session_ids)
            if await self._store.delete(RecordKind.SESSION, current_id):
                removed.append(current_id)

        logger.info("Deleted sessions", extra={"session_id": session_id, "removed": removed})
        return removed

    async def _bulk_remove(
        self,
        operation: str,
        select: Callable[[Session], bool],
    ) -> BulkOperationReport:
        report = BulkOperationReport(operation=operation)
        targets = await self._store.query(RecordKind.SESSION, select)

        for session in targets:
            if self._store.backups_enabled:
                try:
                    if await self._store.create_backup(RecordKind.SESSION, session.id, reason=operation):
                        report.backed_up += 1
                except OrchestrationError as exc:
                    logger.warning(
                        "Backup before removal failed",
                        extra={"session_id": session.id, "operation": operation, "error": str(exc)},
                    )
            try:
                if await self._store.delete(RecordKind.SESSION, session.id, backup=False):
                    report.removed += 1
                    report.removed_ids.append(session.id)
            except OrchestrationError as exc:
                report.failed += 1
                report.errors.append(f"{session.id}: {exc}")

        await self._prune_children(set(report.removed_ids), report)
        report.remaining = len(await self._store.list_ids(RecordKind.SESSION))
        logger.info("Removed sessions", extra=report.to_dict())
        return report

    async def _prune_children(self, removed: set[str], report: BulkOperationReport) -> None:
        if not removed:
            return
        for session in await self._store.query(
            RecordKind.SESSION, lambda item: any(child in removed for child in item.child_session_ids)
        ):
            session.child_session_ids = [
                child_id for child_id in session.child_session_ids if child_id not in removed
            ]
            try:
                await self._store.save(RecordKind.SESSION, session)
            except OrchestrationError as exc:
                report.errors.append(f"{session.id}: failed to drop removed children: {exc}")

    async def cleanup_sessions(self) -> BulkOperationReport:
        """Delete every completed or failed session across all orchestrations."""

        return await self._bulk_remove(
            "cleanup_sessions", lambda session: session.state in _FINISHED_STATES
        )

    async def archive_sessions(self, older_than_days: float = 30) -> BulkOperationReport:
        """Delete completed or failed sessions idle since before the cutoff."""

        if older_than_days < 0:
            raise RecordValidationError(
                "older_than_days must be >= 0", [f"older_than_days: {older_than_days}"]
            )
        cutoff = self._clock() - timedelta(days=older_than_days)
        return await self._bulk_remove(
            "archive_sessions",
            lambda session: session.state in _FINISHED_STATES and session.last_activity_at < cutoff,
        )


__all__ = ["SessionRegistry"]
