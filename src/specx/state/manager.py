"""Atomic task state transitions across both persisted views."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from specx import progress
from specx.audit.log import (
    EVENT_PERFORMANCE_WARNING,
    EVENT_SPEC_COMPLETED,
    EVENT_STORE_SYNCED,
    EVENT_TRANSITION,
    EVENT_TRANSITION_FAILED,
)
from specx.clock import format_timestamp, hours_between, utc_now
from specx.errors import (
    CorruptStateError,
    EngineError,
    ErrorKind,
    InvalidRequestError,
    InvalidTransitionError,
    LockTimeoutError,
    NotFoundError,
    StateInconsistencyError,
    ValidationBlockedError,
)
from specx.router.types import AgentProfile, SpecStatus, TaskRef, TaskStatus
from specx.state.document import SpecDocument, restore_document, write_document
from specx.state.dual_write import WritePhase, commit_dual_write
from specx.state.store import (
    HISTORY_ASSIGNED,
    HISTORY_BLOCKED,
    HISTORY_COMPLETED,
    HISTORY_READIED,
    HISTORY_RELEASED,
    Assignment,
    HistoryEntry,
    TaskRecord,
)
from specx.state.transitions import check_transition
from specx.validation.types import ValidationOptions, ValidationRequest, ValidationResult

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from pathlib import Path

    from specx.audit.log import AuditLog
    from specx.clock import Clock
    from specx.handoff.engine import HandoffEngine
    from specx.repository import SpecRepository
    from specx.router.types import Spec, Task
    from specx.state.lock import SpecLockManager
    from specx.state.store import StateStore
    from specx.validation.validator import AssignmentValidator

logger = logging.getLogger(__name__)

# Fields both views must agree on.
COMPARED_FIELDS = ("status", "assignee", "started_at")


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    ref: TaskRef
    to_status: TaskStatus
    from_status: TaskStatus | None = None
    assignment: Assignment | None = None
    validation: ValidationResult | None = None
    error: EngineError | None = None
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "task": self.ref.key,
            "from": self.from_status.value if self.from_status is not None else None,
            "to": self.to_status.value,
            "assignment": self.assignment.to_dict() if self.assignment is not None else None,
            "validation": self.validation.to_dict() if self.validation is not None else None,
            "error": self.error.to_dict() if self.error is not None else None,
        }


@dataclass(frozen=True)
class CompletionResult:
    success: bool
    ref: TaskRef
    completed_at: str | None = None
    duration_hours: float | None = None
    agent: str | None = None
    notes: str | None = None
    unblocked: tuple[TaskRef, ...] = ()
    handoff_errors: tuple[dict[str, Any], ...] = ()
    spec_completed: bool = False
    error: EngineError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "task": self.ref.key,
            "completed_at": self.completed_at,
            "duration_hours": self.duration_hours,
            "agent": self.agent,
            "notes": self.notes,
            "unblocked": [ref.key for ref in self.unblocked],
            "handoff_errors": list(self.handoff_errors),
            "spec_completed": self.spec_completed,
            "error": self.error.to_dict() if self.error is not None else None,
        }


@dataclass(frozen=True)
class ConsistencyReport:
    mismatches: tuple[dict[str, Any], ...]
    missing_in_store: tuple[str, ...]
    orphaned_in_store: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return not self.mismatches and not self.orphaned_in_store

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "mismatches": list(self.mismatches),
            "missing_in_store": list(self.missing_in_store),
            "orphaned_in_store": list(self.orphaned_in_store),
        }


@dataclass(frozen=True)
class _Plan:
    doc_updates: dict[str, Any]
    record: TaskRecord
    history: tuple[HistoryEntry, ...] = ()
    spec_status: SpecStatus | None = None


class WorkflowStateManager:
    """Applies transitions under the spec lock and keeps both views in step."""

    def __init__(
        self,
        repository: SpecRepository,
        store: StateStore,
        locks: SpecLockManager,
        validator: AssignmentValidator,
        audit: AuditLog,
        *,
        handoff: HandoffEngine | None = None,
        performance_target_seconds: float = 3.0,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.store = store
        self.locks = locks
        self.validator = validator
        self.audit = audit
        self.handoff = handoff
        self.performance_target_seconds = performance_target_seconds
        self.clock = clock

    def assign_task(
        self,
        spec_id: str,
        task_id: str,
        agent: AgentProfile | str,
        *,
        options: ValidationOptions | None = None,
        base_confidence: float | None = None,
        recommended_at: str | None = None,
        assigned_by: str = "start_next",
    ) -> TransitionResult:
        """ready -> in_progress, re-validating inside the lock."""
        ref = TaskRef(spec_id=spec_id, task_id=task_id)
        verdict: list[ValidationResult] = []

        def plan(task: Task, current: TaskRecord, spec: Spec) -> _Plan:
            validation = self.validator.validate(
                ValidationRequest(
                    agent=agent,
                    spec_id=spec_id,
                    task_id=task_id,
                    recommended_at=recommended_at,
                    base_confidence=base_confidence,
                ),
                options,
            )
            verdict.append(validation)
            if validation.error is not None:
                raise validation.error
            if not validation.can_proceed:
                raise ValidationBlockedError(
                    f"Assignment of {ref.key} blocked by {len(validation.violations)} violation(s)",
                    violations=validation.violations,
                )
            agent_type = _agent_type(agent)
            now = self._now()
            return _Plan(
                doc_updates={"status": TaskStatus.IN_PROGRESS.value, "assignee": agent_type, "started_at": now},
                record=replace(
                    current,
                    status=TaskStatus.IN_PROGRESS,
                    priority=task.priority,
                    assignee=agent_type,
                    started_at=now,
                    confidence=validation.confidence,
                    assigned_by=assigned_by,
                    completed_at=None,
                    notes=None,
                    updated_at=now,
                ),
                history=(HistoryEntry(action=HISTORY_ASSIGNED, task=ref.key, at=now, agent=agent_type),),
            )

        started = time.perf_counter()
        try:
            _agent_type(agent)
            task, applied = self._commit(ref, TaskStatus.IN_PROGRESS, plan)
        except EngineError as exc:
            return self._failed(ref, TaskStatus.IN_PROGRESS, exc, started, validation=_first(verdict))

        result = TransitionResult(
            success=True,
            ref=ref,
            from_status=task.status,
            to_status=TaskStatus.IN_PROGRESS,
            assignment=Assignment.from_record(applied.record),
            validation=_first(verdict),
            elapsed_seconds=time.perf_counter() - started,
        )
        self._succeeded(result, agent=applied.record.assignee)
        return result

    def complete_task(
        self,
        spec_id: str,
        task_id: str,
        notes: str | None = None,
        *,
        agent: str | None = None,
    ) -> CompletionResult:
        """in_progress -> complete, then unblock dependents before releasing the lock."""
        ref = TaskRef(spec_id=spec_id, task_id=task_id)
        moment = self.clock()
        now = format_timestamp(moment)
        completed_spec: list[bool] = []

        def plan(task: Task, current: TaskRecord, spec: Spec) -> _Plan:
            if agent is not None and task.assignee != agent:
                raise InvalidRequestError(
                    f"Task {ref.key} is assigned to {task.assignee or 'nobody'}, not {agent}",
                    detail={"task": ref.key, "assignee": task.assignee, "agent": agent},
                )
            duration = _duration_hours(task, moment)
            others_done = all(item.status is TaskStatus.COMPLETE for item in spec.tasks if item.id != task.id)
            spec_status = SpecStatus.DONE if others_done and spec.status is not SpecStatus.DONE else None
            completed_spec.append(spec_status is SpecStatus.DONE)
            return _Plan(
                doc_updates={"status": TaskStatus.COMPLETE.value, "assignee": None, "completed_at": now},
                record=replace(
                    current,
                    status=TaskStatus.COMPLETE,
                    priority=task.priority,
                    assignee=None,
                    completed_at=now,
                    notes=notes,
                    updated_at=now,
                ),
                history=(
                    HistoryEntry(
                        action=HISTORY_COMPLETED,
                        task=ref.key,
                        at=now,
                        agent=task.assignee,
                        duration_hours=duration,
                        notes=notes,
                    ),
                ),
                spec_status=spec_status,
            )

        started = time.perf_counter()
        try:
            with self.locks.hold(spec_id):
                try:
                    task, applied = self._commit(ref, TaskStatus.COMPLETE, plan)
                except EngineError as exc:
                    self._failed(ref, TaskStatus.COMPLETE, exc, started)
                    return CompletionResult(success=False, ref=ref, error=exc)

                # Committed from here on; a cascade failure never undoes the completion.
                entry = applied.history[0]
                transition = TransitionResult(
                    success=True,
                    ref=ref,
                    from_status=task.status,
                    to_status=TaskStatus.COMPLETE,
                    elapsed_seconds=time.perf_counter() - started,
                )
                self._succeeded(transition, agent=task.assignee, extra={"duration_hours": entry.duration_hours})
                spec_completed = bool(completed_spec and completed_spec[0])
                if spec_completed:
                    self.audit.record(EVENT_SPEC_COMPLETED, {"spec_id": spec_id, "task": ref.key})
                report = self.handoff.cascade(ref) if self.handoff is not None else None
        except LockTimeoutError as exc:
            self._failed(ref, TaskStatus.COMPLETE, exc, started)
            return CompletionResult(success=False, ref=ref, error=exc)

        return CompletionResult(
            success=True,
            ref=ref,
            completed_at=now,
            duration_hours=entry.duration_hours,
            agent=task.assignee,
            notes=notes,
            unblocked=tuple(report.unblocked) if report is not None else (),
            handoff_errors=tuple(report.errors) if report is not None else (),
            spec_completed=spec_completed,
        )

    def release_task(
        self,
        spec_id: str,
        task_id: str,
        *,
        agent: str | None = None,
        reason: str | None = None,
    ) -> TransitionResult:
        """in_progress -> ready; the assignment is discarded."""
        ref = TaskRef(spec_id=spec_id, task_id=task_id)

        def plan(task: Task, current: TaskRecord, spec: Spec) -> _Plan:
            if agent is not None and task.assignee != agent:
                raise InvalidRequestError(
                    f"Task {ref.key} is assigned to {task.assignee or 'nobody'}, not {agent}",
                    detail={"task": ref.key, "assignee": task.assignee, "agent": agent},
                )
            now = self._now()
            return _Plan(
                doc_updates={
                    "status": TaskStatus.READY.value,
                    "assignee": None,
                    "started_at": None,
                    "ready_since": now,
                },
                record=_cleared(current, TaskStatus.READY, now),
                history=(
                    HistoryEntry(action=HISTORY_RELEASED, task=ref.key, at=now, agent=task.assignee, notes=reason),
                ),
            )

        return self._simple_transition(ref, TaskStatus.READY, plan)

    def mark_ready(self, spec_id: str, task_id: str) -> TransitionResult:
        """backlog/blocked -> ready once every dependency is complete."""
        return self._to_ready(TaskRef(spec_id=spec_id, task_id=task_id), from_statuses=(TaskStatus.BACKLOG, TaskStatus.BLOCKED))

    def unblock_task(self, ref: TaskRef) -> TransitionResult:
        """blocked -> ready; used by the handoff cascade."""
        return self._to_ready(ref, from_statuses=(TaskStatus.BLOCKED,))

    def mark_blocked(self, spec_id: str, task_id: str, reason: str | None = None) -> TransitionResult:
        ref = TaskRef(spec_id=spec_id, task_id=task_id)

        def plan(task: Task, current: TaskRecord, spec: Spec) -> _Plan:
            now = self._now()
            return _Plan(
                doc_updates={"status": TaskStatus.BLOCKED.value, "assignee": None, "started_at": None, "ready_since": None},
                record=_cleared(current, TaskStatus.BLOCKED, now),
                history=(
                    HistoryEntry(action=HISTORY_BLOCKED, task=ref.key, at=now, agent=task.assignee, notes=reason),
                ),
            )

        return self._simple_transition(ref, TaskStatus.BLOCKED, plan)

    def list_assignments(self, agent: str | None = None) -> list[Assignment]:
        return self.store.assignments(agent)

    def agent_workloads(self) -> dict[str, int]:
        return self.store.agent_workloads()

    def spec_progress(self, spec_id: str) -> progress.SpecProgress:
        return progress.spec_progress(self.repository.get_spec(spec_id))

    def project_progress(self) -> progress.ProjectProgress:
        """Counts by status and percent complete for every spec, read from one snapshot."""
        return progress.project_progress(self.repository.snapshot(), generated_at=self._now())

    def check_consistency(self, spec_id: str | None = None) -> ConsistencyReport:
        """Compare both views for every task without writing anything."""
        snapshot = self.repository.snapshot()
        records = self.store.records()
        specs = [spec for spec in snapshot.specs if spec_id is None or spec.id == spec_id]
        if spec_id is not None and not specs:
            raise NotFoundError(f"Spec `{spec_id}` not found", detail={"spec_id": spec_id})

        mismatches: list[dict[str, Any]] = []
        missing: list[str] = []
        known_keys: set[str] = set()
        for spec in specs:
            for task in spec.tasks:
                key = task.ref.key
                known_keys.add(key)
                record = records.get(key)
                if record is None:
                    missing.append(key)
                    continue
                fields = _compare(task, record)
                if fields:
                    mismatches.append({"task": key, "fields": fields})

        scoped = {key for key in records if spec_id is None or records[key].spec_id == spec_id}
        orphaned = sorted(scoped - known_keys)
        return ConsistencyReport(
            mismatches=tuple(mismatches),
            missing_in_store=tuple(missing),
            orphaned_in_store=tuple(orphaned),
        )

    def sync_store(self, spec_id: str | None = None) -> list[str]:
        """Seed store records for tasks the store has never seen."""
        spec_ids = [spec_id] if spec_id is not None else sorted(self.repository.documents())
        seeded: list[str] = []
        for current_spec in spec_ids:
            with self.locks.hold(current_spec):
                spec = self.repository.load_document(current_spec).to_spec()
                records = self.store.records()
                upserts = {
                    task.ref.key: replace(TaskRecord.from_task(task), updated_at=self._now())
                    for task in spec.tasks
                    if task.ref.key not in records
                }
                if upserts:
                    self.store.apply(upserts)
                    seeded.extend(sorted(upserts))
        self.audit.record(EVENT_STORE_SYNCED, {"spec_id": spec_id, "seeded": seeded})
        return seeded

    def _to_ready(self, ref: TaskRef, *, from_statuses: tuple[TaskStatus, ...]) -> TransitionResult:
        def plan(task: Task, current: TaskRecord, spec: Spec) -> _Plan:
            if task.status not in from_statuses:
                raise InvalidTransitionError(
                    f"Task `{ref.key}` is {task.status.value}; expected {', '.join(item.value for item in from_statuses)}",
                    detail={"task": ref.key, "from": task.status.value, "to": TaskStatus.READY.value},
                )
            unmet = self.repository.snapshot().unmet_dependencies(task)
            if unmet:
                raise InvalidTransitionError(
                    f"Task `{ref.key}` has incomplete dependencies: {', '.join(item.key for item in unmet)}",
                    detail={"task": ref.key, "unmet_dependencies": [item.key for item in unmet]},
                )
            now = self._now()
            return _Plan(
                doc_updates={"status": TaskStatus.READY.value, "ready_since": now},
                record=_cleared(current, TaskStatus.READY, now),
                history=(HistoryEntry(action=HISTORY_READIED, task=ref.key, at=now),),
            )

        return self._simple_transition(ref, TaskStatus.READY, plan)

    def _simple_transition(
        self,
        ref: TaskRef,
        target: TaskStatus,
        plan: Callable[[Task, TaskRecord, Spec], _Plan],
    ) -> TransitionResult:
        started = time.perf_counter()
        try:
            task, applied = self._commit(ref, target, plan)
        except EngineError as exc:
            return self._failed(ref, target, exc, started)
        result = TransitionResult(
            success=True,
            ref=ref,
            from_status=task.status,
            to_status=target,
            elapsed_seconds=time.perf_counter() - started,
        )
        self._succeeded(result, agent=task.assignee)
        return result

    def _commit(
        self,
        ref: TaskRef,
        target: TaskStatus,
        plan: Callable[[Task, TaskRecord, Spec], _Plan],
    ) -> tuple[Task, _Plan]:
        """Lock, compare views, plan, then write store and document as one unit."""
        with self.locks.hold(ref.spec_id):
            document = self.repository.load_document(ref.spec_id)
            spec = document.to_spec()
            task = spec.task(ref.task_id)
            if task is None:
                raise NotFoundError(
                    f"Task `{ref.key}` not found",
                    detail={"spec_id": ref.spec_id, "task_id": ref.task_id},
                )

            stored = self.store.get(ref)
            current = stored if stored is not None else TaskRecord.from_task(task)
            disagreements = _compare(task, current)
            if disagreements:
                raise StateInconsistencyError(
                    f"Spec document and state store disagree on {ref.key}: {', '.join(disagreements)}",
                    detail={"task": ref.key, "fields": disagreements},
                )

            check_transition(task.status, target, task=ref.key)
            applied = plan(task, current, spec)

            updated = document.with_task_fields(ref.task_id, applied.doc_updates)
            if applied.spec_status is not None:
                updated = updated.with_spec_status(applied.spec_status)

            store_written: list[bool] = []

            def write_store() -> None:
                self.store.apply({ref.key: applied.record}, list(applied.history))
                store_written.append(True)

            def restore_store() -> None:
                self.store.restore({ref.key: stored}, list(applied.history) if store_written else [])

            self.locks.refresh()
            commit_dual_write(
                WritePhase(name="store", apply=write_store, restore=restore_store),
                WritePhase(
                    name="document",
                    apply=lambda: write_document(updated),
                    restore=lambda: restore_document(document.path, document.raw),
                ),
                lambda: self._verify(document.path, ref, applied.record),
                label=ref.key,
            )
            return task, applied

    def _verify(self, path: Path, ref: TaskRef, expected: TaskRecord) -> list[str]:
        problems: list[str] = []
        task = SpecDocument.load(path).to_spec().task(ref.task_id)
        stored = self.store.get(ref)
        if task is None:
            return [f"{ref.key} missing from spec document after write"]
        if stored is None:
            return [f"{ref.key} missing from state store after write"]
        problems.extend(f"views disagree on {name}" for name in _compare(task, stored))
        if stored.status is not expected.status:
            problems.append(f"store status is {stored.status.value}, expected {expected.status.value}")
        if task.status is not expected.status:
            problems.append(f"document status is {task.status.value}, expected {expected.status.value}")
        return problems

    def _succeeded(
        self,
        result: TransitionResult,
        *,
        agent: str | None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "task": result.ref.key,
            "spec_id": result.ref.spec_id,
            "from": result.from_status.value if result.from_status is not None else None,
            "to": result.to_status.value,
            "agent": agent,
            "elapsed_seconds": round(result.elapsed_seconds, 3),
        }
        if result.assignment is not None:
            payload["confidence"] = result.assignment.confidence
        payload.update(extra or {})
        self.audit.record(EVENT_TRANSITION, payload)
        self._check_performance(result.ref, result.to_status, result.elapsed_seconds)

    def _failed(
        self,
        ref: TaskRef,
        target: TaskStatus,
        error: EngineError,
        started: float,
        *,
        validation: ValidationResult | None = None,
    ) -> TransitionResult:
        elapsed = time.perf_counter() - started
        if error.kind is ErrorKind.SYNC_FAILURE and not error.detail.get("rolled_back", True):
            logger.critical("Manual intervention required for %s: %s", ref.key, error.message)
        else:
            logger.info("Transition of %s to %s refused: %s", ref.key, target.value, error.message)
        self.audit.record(
            EVENT_TRANSITION_FAILED,
            {
                "task": ref.key,
                "spec_id": ref.spec_id,
                "to": target.value,
                "error": error.to_dict(),
            },
        )
        self._check_performance(ref, target, elapsed)
        return TransitionResult(
            success=False,
            ref=ref,
            to_status=target,
            validation=validation,
            error=error,
            elapsed_seconds=elapsed,
        )

    def _check_performance(self, ref: TaskRef, target: TaskStatus, elapsed: float) -> None:
        if elapsed <= self.performance_target_seconds:
            return
        logger.warning(
            "Transition of %s to %s took %.2fs (target %.2fs)",
            ref.key,
            target.value,
            elapsed,
            self.performance_target_seconds,
        )
        self.audit.record(
            EVENT_PERFORMANCE_WARNING,
            {
                "operation": f"transition:{target.value}",
                "task": ref.key,
                "elapsed_seconds": round(elapsed, 3),
                "target_seconds": self.performance_target_seconds,
            },
        )

    def _now(self) -> str:
        return format_timestamp(self.clock())


def _compare(task: Task, record: TaskRecord) -> list[str]:
    differing: list[str] = []
    for name in COMPARED_FIELDS:
        if getattr(task, name) != getattr(record, name):
            differing.append(name)
    return differing


def _duration_hours(task: Task, end: datetime) -> float | None:
    if not task.started_at:
        return None
    try:
        return hours_between(task.started_at, end)
    except ValueError as exc:
        raise CorruptStateError(
            f"Task {task.ref.key} has an unreadable started_at {task.started_at!r}; fix it in the spec document",
            detail={"task": task.ref.key, "started_at": task.started_at},
        ) from exc


def _cleared(current: TaskRecord, status: TaskStatus, now: str) -> TaskRecord:
    return replace(
        current,
        status=status,
        assignee=None,
        started_at=None,
        confidence=None,
        assigned_by=None,
        updated_at=now,
    )


def _agent_type(agent: AgentProfile | str) -> str:
    name = agent.agent_type if isinstance(agent, AgentProfile) else agent
    if not name or not name.strip():
        raise InvalidRequestError("agent type must not be empty")
    return name.strip()


def _first(items: list[ValidationResult]) -> ValidationResult | None:
    return items[0] if items else None
