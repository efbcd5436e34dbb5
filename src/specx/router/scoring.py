"""Deterministic candidate scoring for task routing."""

from __future__ import annotations

from typing import TYPE_CHECKING

from specx.clock import parse_timestamp
from specx.router.types import (
    AgentProfile,
    RoutingWeights,
    ScoreBreakdown,
    Task,
    TaskStatus,
)

if TYPE_CHECKING:
    from datetime import datetime

    from specx.repository import SpecSnapshot

SECONDS_PER_DAY = 86400


def is_available(task: Task, snapshot: SpecSnapshot) -> bool:
    """Eligible for someone: ready with every dependency complete."""
    if task.status is not TaskStatus.READY:
        return False
    return not snapshot.unmet_dependencies(task)


def capabilities_match(task: Task, agent: AgentProfile) -> bool:
    return task.required_capabilities <= agent.capabilities


def score_task(
    *,
    task: Task,
    agent: AgentProfile,
    snapshot: SpecSnapshot,
    weights: RoutingWeights,
    now: datetime,
) -> ScoreBreakdown:
    """Score one eligible task for `agent`; pure over the snapshot."""
    reasons: list[str] = []

    priority_score = weights.priority.get(task.priority.value, 0)
    reasons.append(f"priority:{task.priority.value}")

    capability_fit, fit_reason = _capability_fit(task, agent, weights)
    reasons.append(fit_reason)

    fan_out_count = sum(
        1 for dependent in snapshot.dependents_of(task.ref) if dependent.status is not TaskStatus.COMPLETE
    )
    fan_out = min(fan_out_count * weights.fan_out_per_dependent, weights.fan_out_cap)
    if fan_out_count:
        reasons.append(f"unblocks:{fan_out_count}")

    days_ready = _days_ready(task, now)
    staleness = min(days_ready * weights.staleness_per_day, weights.staleness_cap)
    if days_ready:
        reasons.append(f"ready_days:{days_ready}")

    total = priority_score + capability_fit + fan_out + staleness
    return ScoreBreakdown(
        priority=priority_score,
        capability_fit=capability_fit,
        fan_out=fan_out,
        staleness=staleness,
        total=total,
        fan_out_count=fan_out_count,
        reasons=tuple(reasons),
    )


def candidate_sort_key(task: Task, score: ScoreBreakdown) -> tuple[int, int, int, str, str]:
    """Score desc, priority desc, fan-out desc, task id asc, spec id asc."""
    return (-score.total, task.priority.rank, -score.fan_out_count, task.id, task.spec_id)


def max_total(weights: RoutingWeights) -> int:
    top_priority = max(weights.priority.values(), default=0)
    top_fit = max(weights.exact_match, weights.superset_match, weights.no_requirements)
    return top_priority + top_fit + weights.fan_out_cap + weights.staleness_cap


def score_to_confidence(total: int, weights: RoutingWeights) -> float:
    """Deterministically map integer score to fixed-precision confidence."""
    ceiling = max_total(weights)
    if ceiling <= 0:
        return 0.0
    raw = max(0.0, min(1.0, total / ceiling))
    return round(raw, 2)


def _capability_fit(task: Task, agent: AgentProfile, weights: RoutingWeights) -> tuple[int, str]:
    required = task.required_capabilities
    if not required:
        return weights.no_requirements, "capabilities:none_required"
    if required == agent.capabilities:
        return weights.exact_match, "capabilities:exact"
    return weights.superset_match, "capabilities:superset"


def _days_ready(task: Task, now: datetime) -> int:
    if not task.ready_since:
        return 0
    try:
        since = parse_timestamp(task.ready_since)
    except ValueError:
        return 0
    elapsed = (now - since).total_seconds()
    if elapsed <= 0:
        return 0
    return int(elapsed // SECONDS_PER_DAY)
