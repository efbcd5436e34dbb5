"""Unblock dependents when a task completes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from specx.audit.log import EVENT_CASCADE, EVENT_HANDOFF_ERROR, AuditFilter
from specx.errors import EngineError
from specx.router.types import TaskRef, TaskStatus

if TYPE_CHECKING:
    from specx.audit.log import AuditLog
    from specx.repository import SpecRepository
    from specx.state.manager import WorkflowStateManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandoffReport:
    completed: TaskRef
    unblocked: list[TaskRef] = field(default_factory=list)
    still_waiting: list[TaskRef] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed": self.completed.key,
            "unblocked": [ref.key for ref in self.unblocked],
            "still_waiting": [ref.key for ref in self.still_waiting],
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class HandoffStatus:
    """Cascade history read back from the audit log."""

    cascades: int
    unblocked: int
    errors: int
    recent: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "cascades": self.cascades,
            "unblocked": self.unblocked,
            "errors": self.errors,
            "recent": [dict(item) for item in self.recent],
        }


class HandoffEngine:
    """Flips blocked dependents to ready once all their dependencies are complete."""

    def __init__(
        self,
        repository: SpecRepository,
        manager: WorkflowStateManager,
        audit: AuditLog,
    ) -> None:
        self.repository = repository
        self.manager = manager
        self.audit = audit

    def on_task_completed(self, ref: TaskRef) -> list[TaskRef]:
        return self.cascade(ref).unblocked

    def status(self, recent: int = 10) -> HandoffStatus:
        cascades = self.audit.query(AuditFilter(event_types=frozenset({EVENT_CASCADE})))
        errors = self.audit.query(AuditFilter(event_types=frozenset({EVENT_HANDOFF_ERROR})))
        latest = cascades[-recent:] if recent > 0 else []
        return HandoffStatus(
            cascades=len(cascades),
            unblocked=sum(len(event.payload.get("unblocked") or []) for event in cascades),
            errors=len(errors),
            recent=tuple(
                {
                    "task": event.payload.get("task"),
                    "at": event.timestamp,
                    "unblocked": list(event.payload.get("unblocked") or []),
                    "errors": len(event.payload.get("errors") or []),
                }
                for event in latest
            ),
        )

    def cascade(self, ref: TaskRef) -> HandoffReport:
        """Scan every spec for direct dependents of `ref`; one failure does not stop the rest.

        Never raises for engine errors: an unreadable spec tree is reported in
        `errors` and the cascade can be re-run once it is fixed.
        """
        report = HandoffReport(completed=ref)
        try:
            snapshot = self.repository.snapshot()
        except EngineError as exc:
            self._error(report, ref, ref.key, exc.kind.value, exc.message)
            self.audit.record(EVENT_CASCADE, {"task": ref.key, "spec_id": ref.spec_id, **report.to_dict()})
            return report

        for dependent in snapshot.dependents_of(ref):
            if dependent.status is not TaskStatus.BLOCKED:
                continue
            if snapshot.unmet_dependencies(dependent):
                report.still_waiting.append(dependent.ref)
                continue

            result = self.manager.unblock_task(dependent.ref)
            if result.success:
                report.unblocked.append(dependent.ref)
                continue

            error = result.error
            self._error(
                report,
                ref,
                dependent.ref.key,
                error.kind.value if isinstance(error, EngineError) else "unknown",
                error.message if isinstance(error, EngineError) else "unblock failed",
            )

        self.audit.record(EVENT_CASCADE, {"task": ref.key, "spec_id": ref.spec_id, **report.to_dict()})
        return report

    def _error(self, report: HandoffReport, completed: TaskRef, task: str, kind: str, message: str) -> None:
        entry = {"task": task, "kind": kind, "message": message}
        report.errors.append(entry)
        logger.warning("Handoff after %s failed for %s: %s", completed.key, task, message)
        self.audit.record(EVENT_HANDOFF_ERROR, {"completed": completed.key, **entry})
