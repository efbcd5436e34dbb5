"""Assignment validation: availability, capability, workload, criticality, dependencies."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from specx.audit.log import EVENT_VALIDATION
from specx.clock import parse_timestamp, utc_now
from specx.config import DEFAULT_WARNING_WEIGHTS
from specx.errors import EngineError, InvalidRequestError, Issue, NotFoundError
from specx.router.agents import EMPTY_REGISTRY
from specx.router.types import AgentProfile, TaskStatus
from specx.validation.types import (
    CODE_CRITICAL_CONFIRMATION,
    CODE_DEPENDENCY_INCOMPLETE,
    CODE_DEPENDENCY_MISSING,
    CODE_MISSING_CAPABILITIES,
    CODE_TASK_ALREADY_ASSIGNED,
    CODE_TASK_NOT_READY,
    CODE_WORKLOAD_LIMIT,
    CONFIDENCE_FLOOR,
    WARN_LARGE_TASK,
    WARN_STALE_RECOMMENDATION,
    WARN_UNREGISTERED_AGENT,
    WARN_WORKLOAD_NEAR_LIMIT,
    WARN_WORKLOAD_OVERRIDE,
    ValidationOptions,
    ValidationRequest,
    ValidationResult,
)

if TYPE_CHECKING:
    from specx.audit.log import AuditLog
    from specx.clock import Clock
    from specx.repository import SpecRepository, SpecSnapshot
    from specx.router.agents import AgentRegistry
    from specx.router.types import Spec, Task
    from specx.state.store import StateStore

logger = logging.getLogger(__name__)


class AssignmentValidator:
    """Decides whether an agent may take a task right now. Reads only."""

    def __init__(
        self,
        repository: SpecRepository,
        store: StateStore,
        *,
        registry: AgentRegistry = EMPTY_REGISTRY,
        max_concurrent_tasks: int = 3,
        stale_recommendation_seconds: float = 300.0,
        large_task_hours: float = 8.0,
        warning_weights: dict[str, float] | None = None,
        audit: AuditLog | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.store = store
        self.registry = registry
        self.max_concurrent_tasks = max_concurrent_tasks
        self.stale_recommendation_seconds = stale_recommendation_seconds
        self.large_task_hours = large_task_hours
        self.warning_weights = dict(warning_weights or DEFAULT_WARNING_WEIGHTS)
        self.audit = audit
        self.clock = clock

    def validate(
        self,
        request: ValidationRequest,
        options: ValidationOptions | None = None,
    ) -> ValidationResult:
        opts = options or ValidationOptions()
        try:
            result = self._validate(request, opts)
        except EngineError as exc:
            result = ValidationResult.from_error(exc)
        self._record(request, result)
        return result

    def _validate(self, request: ValidationRequest, opts: ValidationOptions) -> ValidationResult:
        agent = self._resolve_agent(request)
        if not request.spec_id.strip() or not request.task_id.strip():
            raise InvalidRequestError("spec_id and task_id are required", detail={"task": request.ref.key})

        snapshot = self.repository.snapshot()
        spec = snapshot.spec(request.spec_id)
        if spec is None:
            raise NotFoundError(f"Spec `{request.spec_id}` not found", detail={"spec_id": request.spec_id})
        task = spec.task(request.task_id)
        if task is None:
            raise NotFoundError(
                f"Task `{request.ref.key}` not found",
                detail={"spec_id": request.spec_id, "task_id": request.task_id},
            )

        violations: list[Issue] = []
        warnings: list[Issue] = []

        violations.extend(self._check_availability(task))
        if opts.check_capabilities:
            violations.extend(_check_capabilities(task, agent))
        if opts.check_workload:
            found_violations, found_warnings = self._check_workload(agent, opts)
            violations.extend(found_violations)
            warnings.extend(found_warnings)
        if opts.check_criticality:
            violations.extend(_check_criticality(task, spec, opts))
        if opts.check_dependencies:
            violations.extend(_check_dependencies(task, snapshot))

        warnings.extend(self._soft_warnings(request, agent, task))

        confidence = request.base_confidence if request.base_confidence is not None else 1.0
        for warning in warnings:
            confidence -= self.warning_weights.get(warning.code, 0.0)
        confidence = round(min(1.0, max(CONFIDENCE_FLOOR, confidence)), 2)

        can_proceed = not violations
        return ValidationResult(
            is_valid=can_proceed and not warnings,
            can_proceed=can_proceed,
            confidence=confidence,
            violations=tuple(violations),
            warnings=tuple(warnings),
        )

    def _resolve_agent(self, request: ValidationRequest) -> AgentProfile:
        if isinstance(request.agent, AgentProfile):
            if not request.agent.agent_type.strip():
                raise InvalidRequestError("agent type must not be empty")
            return request.agent
        if not request.agent or not request.agent.strip():
            raise InvalidRequestError("agent type must not be empty")
        return self.registry.resolve(request.agent)

    def _check_availability(self, task: Task) -> list[Issue]:
        issues: list[Issue] = []
        if task.status is not TaskStatus.READY:
            issues.append(
                Issue(
                    code=CODE_TASK_NOT_READY,
                    message=f"Task {task.ref.key} is {task.status.value}, not ready",
                    hint="Run `specx next` to pick a ready task",
                )
            )
        record = self.store.get(task.ref)
        if record is not None and record.status is TaskStatus.IN_PROGRESS and record.assignee:
            issues.append(
                Issue(
                    code=CODE_TASK_ALREADY_ASSIGNED,
                    message=f"Task {task.ref.key} is already assigned to {record.assignee}",
                    hint=f"Wait for {record.assignee} to finish or release it with `specx release`",
                )
            )
        return issues

    def _check_workload(self, agent: AgentProfile, opts: ValidationOptions) -> tuple[list[Issue], list[Issue]]:
        active = self.store.assignments(agent.agent_type)
        count = len(active)
        limit = self.max_concurrent_tasks
        if count >= limit:
            current = ", ".join(item.ref.key for item in active)
            if opts.override_workload:
                return [], [
                    Issue(
                        code=WARN_WORKLOAD_OVERRIDE,
                        message=f"Agent {agent.agent_type} exceeds its limit ({count}/{limit}) by override",
                        hint="Complete an active task soon to get back under the limit",
                    )
                ]
            return [
                Issue(
                    code=CODE_WORKLOAD_LIMIT,
                    message=f"Agent {agent.agent_type} already has {count} active task(s) (limit {limit})",
                    hint=f"Complete or release one of: {current}",
                )
            ], []
        if limit > 1 and count == limit - 1:
            return [], [
                Issue(
                    code=WARN_WORKLOAD_NEAR_LIMIT,
                    message=f"Agent {agent.agent_type} will reach its limit ({count + 1}/{limit})",
                    hint="Finish current work before taking more",
                )
            ]
        return [], []

    def _soft_warnings(self, request: ValidationRequest, agent: AgentProfile, task: Task) -> list[Issue]:
        warnings: list[Issue] = []
        if request.recommended_at:
            try:
                recommended = parse_timestamp(request.recommended_at)
            except ValueError as exc:
                raise InvalidRequestError(
                    f"recommended_at is not an ISO-8601 timestamp: {request.recommended_at!r}",
                    detail={"task": request.ref.key, "recommended_at": request.recommended_at},
                ) from exc
            age = (self.clock() - recommended).total_seconds()
            if age > self.stale_recommendation_seconds:
                warnings.append(
                    Issue(
                        code=WARN_STALE_RECOMMENDATION,
                        message=f"Recommendation is {int(age)}s old",
                        hint="Run `specx next` again for a fresh recommendation",
                    )
                )
        if not agent.known:
            warnings.append(
                Issue(
                    code=WARN_UNREGISTERED_AGENT,
                    message=f"Agent {agent.agent_type} is not in the agent registry",
                    hint="Add it to .specx/runtime/agents.yaml with its capabilities",
                )
            )
        if task.estimated_hours is not None and task.estimated_hours > self.large_task_hours:
            warnings.append(
                Issue(
                    code=WARN_LARGE_TASK,
                    message=f"Task {task.ref.key} is estimated at {task.estimated_hours:g}h",
                    hint="Consider splitting it into smaller tasks",
                )
            )
        return warnings

    def _record(self, request: ValidationRequest, result: ValidationResult) -> None:
        if self.audit is None:
            return
        self.audit.record(
            EVENT_VALIDATION,
            {
                "agent": request.agent_type,
                "task": request.ref.key,
                "spec_id": request.spec_id,
                **result.to_dict(),
            },
        )


def _check_capabilities(task: Task, agent: AgentProfile) -> list[Issue]:
    missing = sorted(task.required_capabilities - agent.capabilities)
    if not missing:
        return []
    return [
        Issue(
            code=CODE_MISSING_CAPABILITIES,
            message=f"Agent {agent.agent_type} lacks capabilities: {', '.join(missing)}",
            hint="Route to an agent with these capabilities or declare them in .specx/runtime/agents.yaml",
        )
    ]


def _check_criticality(task: Task, spec: Spec, opts: ValidationOptions) -> list[Issue]:
    if opts.confirm_critical:
        return []
    if not (task.priority.is_critical or spec.priority.is_critical):
        return []
    return [
        Issue(
            code=CODE_CRITICAL_CONFIRMATION,
            message="P0 (Critical) tasks require explicit confirmation",
            hint="Re-run with --confirm-critical",
        )
    ]


def _check_dependencies(task: Task, snapshot: SpecSnapshot) -> list[Issue]:
    issues: list[Issue] = []
    for ref in task.dependencies:
        status = snapshot.dependency_status(ref)
        if status is None:
            issues.append(
                Issue(
                    code=CODE_DEPENDENCY_MISSING,
                    message=f"Dependency {ref.key} does not exist",
                    hint=f"Fix depends_on for {task.ref.key} or add the missing task",
                )
            )
        elif status is not TaskStatus.COMPLETE:
            issues.append(
                Issue(
                    code=CODE_DEPENDENCY_INCOMPLETE,
                    message=f"Dependency {ref.key} is {status.value}",
                    hint=f"Complete {ref.key} first",
                )
            )
    return issues
