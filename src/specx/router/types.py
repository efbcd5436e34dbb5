"""Router domain types for spec task routing."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

DEFAULT_CONFIG_RELATIVE_PATH = Path(".specx/config.yaml")
DEFAULT_AGENTS_RELATIVE_PATH = Path(".specx/runtime/agents.yaml")
DEFAULT_SPECS_RELATIVE_PATH = Path("specs")
DEFAULT_STATE_RELATIVE_PATH = Path(".specx/state")
DEFAULT_LOCK_RELATIVE_PATH = Path(".specx/locks")


class TaskStatus(str, Enum):
    """Closed set of task lifecycle states."""

    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETE = "complete"


class SpecStatus(str, Enum):
    """Coarse spec lifecycle states."""

    BACKLOG = "backlog"
    ACTIVE = "active"
    DONE = "done"


TERMINAL_SPEC_STATUSES: frozenset[SpecStatus] = frozenset({SpecStatus.DONE})


class Priority(str, Enum):
    """Ordinal priority tiers, P0 being the critical tier."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def rank(self) -> int:
        return int(self.value[1:])

    @property
    def is_critical(self) -> bool:
        return self is Priority.P0


@dataclass(frozen=True, order=True)
class TaskRef:
    """Reference to a task inside a spec."""

    spec_id: str
    task_id: str

    @classmethod
    def parse(cls, raw: str, *, default_spec: str) -> TaskRef:
        """Parse `TASK` or `SPEC:TASK` into a reference."""
        value = raw.strip()
        if not value:
            raise ValueError("task reference must not be empty")
        if ":" in value:
            spec_id, task_id = value.split(":", 1)
            spec_id = spec_id.strip()
            task_id = task_id.strip()
            if not spec_id or not task_id:
                raise ValueError(f"malformed task reference `{raw}`")
            return cls(spec_id=spec_id, task_id=task_id)
        return cls(spec_id=default_spec, task_id=value)

    @property
    def key(self) -> str:
        return f"{self.spec_id}:{self.task_id}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Task:
    """A single work item owned by a spec."""

    id: str
    spec_id: str
    title: str
    status: TaskStatus
    priority: Priority
    required_capabilities: frozenset[str] = frozenset()
    dependencies: tuple[TaskRef, ...] = ()
    estimated_hours: float | None = None
    context_requirements: tuple[str, ...] = ()
    assignee: str | None = None
    started_at: str | None = None
    ready_since: str | None = None
    completed_at: str | None = None

    @property
    def ref(self) -> TaskRef:
        return TaskRef(spec_id=self.spec_id, task_id=self.id)


@dataclass(frozen=True)
class Spec:
    """A unit of work grouping ordered tasks."""

    id: str
    title: str
    status: SpecStatus
    priority: Priority
    phase: str | None
    tasks: tuple[Task, ...]
    path: Path | None = None

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


@dataclass(frozen=True)
class AgentProfile:
    """Capability profile used only for matching."""

    agent_type: str
    capabilities: frozenset[str]
    known: bool = True


@dataclass(frozen=True)
class RouteFilters:
    """Optional recommendation filters; empty means unrestricted."""

    priorities: frozenset[Priority] = frozenset()
    phases: frozenset[str] = frozenset()
    spec_statuses: frozenset[SpecStatus] = frozenset()

    @classmethod
    def from_strings(
        cls,
        *,
        priorities: list[str] | None = None,
        phases: list[str] | None = None,
        spec_statuses: list[str] | None = None,
    ) -> RouteFilters:
        """Build filters from repeatable and/or comma-separated CLI values."""
        return cls(
            priorities=frozenset(Priority(item.upper()) for item in _split_values(priorities)),
            phases=frozenset(_split_values(phases)),
            spec_statuses=frozenset(SpecStatus(item.lower()) for item in _split_values(spec_statuses)),
        )

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "priorities": sorted(item.value for item in self.priorities),
            "phases": sorted(self.phases),
            "spec_statuses": sorted(item.value for item in self.spec_statuses),
        }


@dataclass(frozen=True)
class RoutingWeights:
    """Tunable integer weights for candidate scoring."""

    priority: dict[str, int] = field(
        default_factory=lambda: {"P0": 40, "P1": 30, "P2": 20, "P3": 10}
    )
    exact_match: int = 15
    superset_match: int = 8
    no_requirements: int = 4
    fan_out_per_dependent: int = 5
    fan_out_cap: int = 25
    staleness_per_day: int = 1
    staleness_cap: int = 5


@dataclass(frozen=True)
class ScoreBreakdown:
    """Deterministic score details for one candidate task."""

    priority: int
    capability_fit: int
    fan_out: int
    staleness: int
    total: int
    fan_out_count: int
    reasons: tuple[str, ...]

    def to_dict(self) -> dict[str, int]:
        return {
            "priority": self.priority,
            "capability_fit": self.capability_fit,
            "fan_out": self.fan_out,
            "staleness": self.staleness,
            "total": self.total,
        }


@dataclass(frozen=True)
class Candidate:
    """An eligible task with its score."""

    task: Task
    spec_status: SpecStatus
    phase: str | None
    score: ScoreBreakdown


@dataclass(frozen=True)
class RecommendationMetadata:
    """Counts callers use to explain an empty recommendation."""

    total_available: int
    agent_matches: int
    agent_known: bool
    generated_at: str


@dataclass(frozen=True)
class Recommendation:
    """Router output; `task` is None when nothing is eligible."""

    agent: AgentProfile
    filters: RouteFilters
    task: Task | None
    score: ScoreBreakdown | None
    reasoning: tuple[str, ...]
    alternatives: tuple[Candidate, ...]
    metadata: RecommendationMetadata

    @property
    def found(self) -> bool:
        return self.task is not None


def _split_values(values: list[str] | None) -> list[str]:
    if not values:
        return []
    parsed: list[str] = []
    for raw in values:
        for item in raw.split(","):
            value = item.strip()
            if value:
                parsed.append(value)
    return parsed
