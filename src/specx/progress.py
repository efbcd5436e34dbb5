"""Read-only progress summaries over a spec snapshot."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from specx.router.types import SpecStatus, TaskStatus

if TYPE_CHECKING:
    from specx.repository import SpecSnapshot
    from specx.router.types import Spec

NO_PHASE = "no-phase"


def percent(done: int, total: int) -> int:
    """Whole-number percentage, halves rounded up."""
    if total <= 0:
        return 0
    return (done * 200 + total) // (total * 2)


@dataclass(frozen=True)
class SpecProgress:
    spec_id: str
    title: str
    status: SpecStatus
    phase: str | None
    counts: dict[str, int]
    active_assignments: tuple[dict[str, str | None], ...] = ()

    @property
    def total_tasks(self) -> int:
        return sum(self.counts.values())

    @property
    def completed_tasks(self) -> int:
        return self.counts.get(TaskStatus.COMPLETE.value, 0)

    @property
    def percentage(self) -> int:
        # A spec without tasks is all-or-nothing on its own status.
        if self.total_tasks == 0:
            return 100 if self.status is SpecStatus.DONE else 0
        return percent(self.completed_tasks, self.total_tasks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "title": self.title,
            "status": self.status.value,
            "phase": self.phase,
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "percentage": self.percentage,
            "counts": dict(self.counts),
            "active_assignments": [dict(item) for item in self.active_assignments],
        }


@dataclass(frozen=True)
class ProjectProgress:
    specs: tuple[SpecProgress, ...]
    generated_at: str

    @property
    def total_tasks(self) -> int:
        return sum(item.total_tasks for item in self.specs)

    @property
    def completed_tasks(self) -> int:
        return sum(item.completed_tasks for item in self.specs)

    @property
    def percentage(self) -> int:
        return percent(self.completed_tasks, self.total_tasks)

    def counts(self) -> dict[str, int]:
        totals = {status.value: 0 for status in TaskStatus}
        for item in self.specs:
            for name, count in item.counts.items():
                totals[name] += count
        return totals

    def by_phase(self) -> dict[str, dict[str, int]]:
        phases: dict[str, dict[str, int]] = {}
        for item in self.specs:
            entry = phases.setdefault(item.phase or NO_PHASE, {"specs": 0, "completed_specs": 0})
            entry["specs"] += 1
            if item.status is SpecStatus.DONE:
                entry["completed_specs"] += 1
        for entry in phases.values():
            entry["percentage"] = percent(entry["completed_specs"], entry["specs"])
        return dict(sorted(phases.items()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "total_specs": len(self.specs),
            "active_specs": sum(1 for item in self.specs if item.status is SpecStatus.ACTIVE),
            "completed_specs": sum(1 for item in self.specs if item.status is SpecStatus.DONE),
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "percentage": self.percentage,
            "counts": self.counts(),
            "active_assignments": sum(len(item.active_assignments) for item in self.specs),
            "by_phase": self.by_phase(),
            "specs": [item.to_dict() for item in self.specs],
        }


def spec_progress(spec: Spec) -> SpecProgress:
    counts = {status.value: 0 for status in TaskStatus}
    active: list[dict[str, str | None]] = []
    for task in spec.tasks:
        counts[task.status.value] += 1
        if task.status is TaskStatus.IN_PROGRESS:
            active.append({"task": task.ref.key, "agent": task.assignee, "started_at": task.started_at})
    return SpecProgress(
        spec_id=spec.id,
        title=spec.title,
        status=spec.status,
        phase=spec.phase,
        counts=counts,
        active_assignments=tuple(active),
    )


def project_progress(snapshot: SpecSnapshot, *, generated_at: str) -> ProjectProgress:
    return ProjectProgress(
        specs=tuple(spec_progress(spec) for spec in snapshot.specs),
        generated_at=generated_at,
    )
