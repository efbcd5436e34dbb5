"""Start-next and complete-current workflows over the engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from specx.audit.log import EVENT_COMMAND_FAILED
from specx.errors import EngineError, ErrorKind, InvalidRequestError, NotFoundError
from specx.router.reporting import recommendation_to_dict
from specx.router.scoring import score_to_confidence
from specx.router.types import TaskRef, TaskStatus
from specx.validation.types import ValidationOptions, ValidationRequest

if TYPE_CHECKING:
    from specx.engine import Engine
    from specx.router.types import Recommendation, RouteFilters
    from specx.state.manager import CompletionResult
    from specx.state.store import Assignment
    from specx.validation.types import ValidationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StartNextResult:
    success: bool
    agent: str
    dry_run: bool = False
    recommendation: Recommendation | None = None
    validation: ValidationResult | None = None
    assignment: Assignment | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    suggestions: tuple[str, ...] = ()

    @property
    def refused(self) -> bool:
        return not self.success and self.error_kind in (None, ErrorKind.VALIDATION_BLOCKED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "agent": self.agent,
            "dry_run": self.dry_run,
            "assigned": self.assignment.to_dict() if self.assignment is not None else None,
            "recommendation": recommendation_to_dict(self.recommendation) if self.recommendation else None,
            "validation": self.validation.to_dict() if self.validation is not None else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True)
class CompleteCurrentResult:
    success: bool
    task: TaskRef | None = None
    dry_run: bool = False
    completion: CompletionResult | None = None
    would_unblock: tuple[TaskRef, ...] = ()
    error: str | None = None
    error_kind: ErrorKind | None = None
    suggestions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "task": self.task.key if self.task is not None else None,
            "dry_run": self.dry_run,
            "completed": self.completion.to_dict() if self.completion is not None else None,
            "would_unblock": [ref.key for ref in self.would_unblock],
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "suggestions": list(self.suggestions),
        }


def start_next(
    engine: Engine,
    agent: str,
    filters: RouteFilters | None = None,
    *,
    dry_run: bool = False,
    confirm_critical: bool = False,
    override_workload: bool = False,
) -> StartNextResult:
    """Recommend, validate, then assign the next task for `agent`."""
    agent_name = (agent or "").strip()
    if not agent_name:
        error = InvalidRequestError("agent type must not be empty", detail={"agent": agent})
        _record_failure(engine, "start_next", error, agent=agent_name or None)
        return StartNextResult(
            success=False,
            agent=agent_name,
            dry_run=dry_run,
            error=error.message,
            error_kind=error.kind,
            suggestions=("Pass --agent with one of the types in .specx/runtime/agents.yaml",),
        )

    try:
        recommendation = engine.router.recommend(agent_name, filters)
    except EngineError as exc:
        _record_failure(engine, "start_next", exc, agent=agent_name)
        return StartNextResult(
            success=False,
            agent=agent_name,
            dry_run=dry_run,
            error=exc.message,
            error_kind=exc.kind,
            suggestions=_error_suggestions(exc),
        )

    if recommendation.task is None or recommendation.score is None:
        return StartNextResult(
            success=False,
            agent=agent_name,
            dry_run=dry_run,
            recommendation=recommendation,
            error="No eligible task found",
            suggestions=no_task_suggestions(recommendation),
        )

    task = recommendation.task
    options = ValidationOptions(confirm_critical=confirm_critical, override_workload=override_workload)
    base_confidence = score_to_confidence(recommendation.score.total, engine.router.weights)
    validation = engine.validator.validate(
        ValidationRequest(
            agent=recommendation.agent,
            spec_id=task.spec_id,
            task_id=task.id,
            recommended_at=recommendation.metadata.generated_at,
            base_confidence=base_confidence,
        ),
        options,
    )
    if validation.error is not None:
        return StartNextResult(
            success=False,
            agent=agent_name,
            dry_run=dry_run,
            recommendation=recommendation,
            validation=validation,
            error=validation.error.message,
            error_kind=validation.error.kind,
            suggestions=_error_suggestions(validation.error),
        )
    if not validation.can_proceed:
        return StartNextResult(
            success=False,
            agent=agent_name,
            dry_run=dry_run,
            recommendation=recommendation,
            validation=validation,
            error=f"Assignment of {task.ref.key} blocked by {len(validation.violations)} violation(s)",
            error_kind=ErrorKind.VALIDATION_BLOCKED,
            suggestions=tuple(item.hint for item in validation.violations if item.hint),
        )

    if dry_run:
        return StartNextResult(
            success=True,
            agent=agent_name,
            dry_run=True,
            recommendation=recommendation,
            validation=validation,
            suggestions=tuple(item.hint for item in validation.warnings if item.hint),
        )

    result = engine.manager.assign_task(
        task.spec_id,
        task.id,
        recommendation.agent,
        options=options,
        base_confidence=base_confidence,
        recommended_at=recommendation.metadata.generated_at,
    )
    if not result.success:
        error = result.error
        message = error.message if error is not None else "assignment failed"
        kind = error.kind if error is not None else None
        return StartNextResult(
            success=False,
            agent=agent_name,
            recommendation=recommendation,
            validation=result.validation or validation,
            error=message,
            error_kind=kind,
            suggestions=_error_suggestions(error) if error is not None else (),
        )

    logger.info("Assigned %s to %s", task.ref.key, agent_name)
    return StartNextResult(
        success=True,
        agent=agent_name,
        recommendation=recommendation,
        validation=result.validation or validation,
        assignment=result.assignment,
        suggestions=tuple(item.hint for item in validation.warnings if item.hint),
    )


def complete_current(
    engine: Engine,
    *,
    agent: str | None = None,
    spec_id: str | None = None,
    task_id: str | None = None,
    notes: str | None = None,
    dry_run: bool = False,
) -> CompleteCurrentResult:
    """Complete the named task, or the caller's single active assignment."""
    try:
        ref = resolve_current_task(engine, agent=agent, spec_id=spec_id, task_id=task_id)
    except EngineError as exc:
        _record_failure(engine, "complete_current", exc, agent=agent, spec_id=spec_id, task_id=task_id)
        return CompleteCurrentResult(
            success=False,
            dry_run=dry_run,
            error=exc.message,
            error_kind=exc.kind,
            suggestions=_error_suggestions(exc),
        )

    if dry_run:
        return _preview_completion(engine, ref)

    completion = engine.manager.complete_task(ref.spec_id, ref.task_id, notes, agent=agent)
    if not completion.success:
        error = completion.error
        return CompleteCurrentResult(
            success=False,
            task=ref,
            completion=completion,
            error=error.message if error is not None else "completion failed",
            error_kind=error.kind if error is not None else None,
            suggestions=_error_suggestions(error) if error is not None else (),
        )

    suggestions: list[str] = []
    if completion.handoff_errors:
        suggestions.append(
            f"Could not unblock every dependent; fix the errors, then run `specx handoff --task {ref.key}`"
        )
    if completion.unblocked:
        suggestions.append(
            f"Unblocked {len(completion.unblocked)} task(s): {', '.join(ref.key for ref in completion.unblocked)}"
        )
    if completion.spec_completed:
        suggestions.append(f"Spec {ref.spec_id} is done")
    suggestions.append("Run `specx next` to pick up the next task")
    return CompleteCurrentResult(
        success=True,
        task=ref,
        completion=completion,
        suggestions=tuple(suggestions),
    )


def resolve_current_task(
    engine: Engine,
    *,
    agent: str | None,
    spec_id: str | None,
    task_id: str | None,
) -> TaskRef:
    """Work out which task to complete from explicit ids or live assignments."""
    if task_id:
        if ":" in task_id or spec_id:
            try:
                return TaskRef.parse(task_id, default_spec=spec_id or "")
            except ValueError as exc:
                raise InvalidRequestError(str(exc), detail={"task_id": task_id}) from exc
        matches = [item for item in engine.store.assignments(agent) if item.task_id == task_id]
        if len(matches) == 1:
            return matches[0].ref
        raise InvalidRequestError(
            f"Task `{task_id}` is ambiguous without --spec",
            detail={"task_id": task_id, "matches": [item.ref.key for item in matches]},
        )
    if spec_id:
        raise InvalidRequestError("--spec requires --task", detail={"spec_id": spec_id})

    active = engine.store.assignments(agent)
    if not active:
        who = f" for {agent}" if agent else ""
        raise NotFoundError(f"No active assignment{who}", detail={"agent": agent})
    if len(active) > 1:
        keys = [item.ref.key for item in active]
        raise InvalidRequestError(
            f"Multiple active assignments: {', '.join(keys)}; pass --spec and --task",
            detail={"assignments": keys},
        )
    return active[0].ref


def no_task_suggestions(recommendation: Recommendation) -> tuple[str, ...]:
    """Explain an empty recommendation: nothing exists vs nothing matches."""
    metadata = recommendation.metadata
    agent = recommendation.agent
    suggestions: list[str] = []
    if metadata.total_available == 0:
        suggestions.append("No ready tasks with complete dependencies exist right now")
        filters = recommendation.filters
        if filters.priorities or filters.phases or filters.spec_statuses:
            suggestions.append("Relax the --priority, --phase or --spec-status filters")
        suggestions.append("Check blocked or backlog tasks with `specx deps`")
    else:
        suggestions.append(
            f"{metadata.total_available} ready task(s) exist but none match the capabilities of {agent.agent_type}"
        )
        if not agent.known:
            suggestions.append(f"Register {agent.agent_type} in .specx/runtime/agents.yaml")
        else:
            suggestions.append("Add the missing capabilities to the agent registry or route to another agent")
    return tuple(suggestions)


def _preview_completion(engine: Engine, ref: TaskRef) -> CompleteCurrentResult:
    try:
        snapshot = engine.repository.snapshot()
        task = snapshot.task(ref)
        if task is None:
            raise NotFoundError(f"Task `{ref.key}` not found", detail={"task": ref.key})
        if task.status is not TaskStatus.IN_PROGRESS:
            raise InvalidRequestError(
                f"Task {ref.key} is {task.status.value}, not in_progress",
                detail={"task": ref.key, "status": task.status.value},
            )
    except EngineError as exc:
        _record_failure(engine, "complete_current", exc, task=ref.key, spec_id=ref.spec_id, dry_run=True)
        return CompleteCurrentResult(
            success=False,
            task=ref,
            dry_run=True,
            error=exc.message,
            error_kind=exc.kind,
            suggestions=_error_suggestions(exc),
        )

    would_unblock = []
    for dependent in snapshot.dependents_of(ref):
        if dependent.status is not TaskStatus.BLOCKED:
            continue
        remaining = [dep for dep in snapshot.unmet_dependencies(dependent) if dep != ref]
        if not remaining:
            would_unblock.append(dependent.ref)
    return CompleteCurrentResult(success=True, task=ref, dry_run=True, would_unblock=tuple(would_unblock))


def _record_failure(engine: Engine, command: str, error: EngineError, **context: Any) -> None:
    """Failures that never reach the state manager are still audited."""
    payload = {key: value for key, value in context.items() if value is not None}
    payload.update({"command": command, "error": error.to_dict()})
    engine.audit.record(EVENT_COMMAND_FAILED, payload)
    logger.info("%s failed: %s", command, error.message)


def _error_suggestions(error: EngineError) -> tuple[str, ...]:
    if error.kind is ErrorKind.LOCK_TIMEOUT:
        return ("Another writer holds the spec lock; retry shortly",)
    if error.kind is ErrorKind.STATE_INCONSISTENCY:
        return ("Run `specx state check` to see which views disagree",)
    if error.kind is ErrorKind.SYNC_FAILURE:
        if error.detail.get("rolled_back", True):
            return ("Both views were restored; retry the command",)
        return ("Manual intervention required: compare the spec document with .specx/state/tasks.json",)
    if error.kind is ErrorKind.NOT_FOUND:
        return ("Check the spec and task ids with `specx assignments` or `specx deps`",)
    if error.kind is ErrorKind.VALIDATION_BLOCKED:
        return tuple(item.get("hint") for item in error.detail.get("violations", []) if item.get("hint"))
    if error.kind is ErrorKind.INVALID_TRANSITION:
        return ("Run `specx deps` to inspect the task's status and dependencies",)
    return ()
