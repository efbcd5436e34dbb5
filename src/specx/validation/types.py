"""Assignment validation request and verdict types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from specx.router.types import AgentProfile, TaskRef

if TYPE_CHECKING:
    from specx.errors import EngineError, Issue

CODE_TASK_NOT_READY = "task_not_ready"
CODE_TASK_ALREADY_ASSIGNED = "task_already_assigned"
CODE_MISSING_CAPABILITIES = "missing_capabilities"
CODE_WORKLOAD_LIMIT = "workload_limit"
CODE_CRITICAL_CONFIRMATION = "critical_confirmation_required"
CODE_DEPENDENCY_INCOMPLETE = "dependency_incomplete"
CODE_DEPENDENCY_MISSING = "dependency_missing"

WARN_STALE_RECOMMENDATION = "stale_recommendation"
WARN_UNREGISTERED_AGENT = "unregistered_agent"
WARN_WORKLOAD_NEAR_LIMIT = "workload_near_limit"
WARN_WORKLOAD_OVERRIDE = "workload_override"
WARN_LARGE_TASK = "large_task"

CONFIDENCE_FLOOR = 0.1


@dataclass(frozen=True)
class ValidationRequest:
    """Proposed assignment of one task to one agent."""

    agent: AgentProfile | str
    spec_id: str
    task_id: str
    recommended_at: str | None = None
    base_confidence: float | None = None

    @property
    def ref(self) -> TaskRef:
        return TaskRef(spec_id=self.spec_id, task_id=self.task_id)

    @property
    def agent_type(self) -> str:
        if isinstance(self.agent, AgentProfile):
            return self.agent.agent_type
        return self.agent


@dataclass(frozen=True)
class ValidationOptions:
    check_capabilities: bool = True
    check_workload: bool = True
    check_criticality: bool = True
    check_dependencies: bool = True
    override_workload: bool = False
    confirm_critical: bool = False


@dataclass(frozen=True)
class ValidationResult:
    """Verdict; `error` is set for malformed requests and unknown tasks."""

    is_valid: bool
    can_proceed: bool
    confidence: float
    violations: tuple[Issue, ...] = ()
    warnings: tuple[Issue, ...] = ()
    error: EngineError | None = None

    @classmethod
    def from_error(cls, error: EngineError) -> ValidationResult:
        return cls(is_valid=False, can_proceed=False, confidence=0.0, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "can_proceed": self.can_proceed,
            "confidence": self.confidence,
            "violations": [item.to_dict() for item in self.violations],
            "warnings": [item.to_dict() for item in self.warnings],
            "error": self.error.to_dict() if self.error is not None else None,
        }
