"""Deterministic next-task recommendation."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from specx.audit.log import EVENT_PERFORMANCE_WARNING, EVENT_RECOMMENDATION
from specx.clock import format_timestamp, utc_now
from specx.router.agents import EMPTY_REGISTRY
from specx.router.scoring import candidate_sort_key, capabilities_match, is_available, score_task
from specx.router.types import (
    AgentProfile,
    Candidate,
    Recommendation,
    RecommendationMetadata,
    RouteFilters,
    RoutingWeights,
    ScoreBreakdown,
    Task,
)

if TYPE_CHECKING:
    from specx.audit.log import AuditLog
    from specx.clock import Clock
    from specx.repository import SpecRepository
    from specx.router.agents import AgentRegistry

logger = logging.getLogger(__name__)


class TaskRouter:
    """Picks the best ready task for an agent. Reads only; never locks."""

    def __init__(
        self,
        repository: SpecRepository,
        *,
        registry: AgentRegistry = EMPTY_REGISTRY,
        weights: RoutingWeights | None = None,
        max_alternatives: int = 3,
        performance_target_seconds: float = 3.0,
        audit: AuditLog | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.weights = weights or RoutingWeights()
        self.max_alternatives = max_alternatives
        self.performance_target_seconds = performance_target_seconds
        self.audit = audit
        self.clock = clock

    def resolve_agent(self, agent: AgentProfile | str) -> AgentProfile:
        if isinstance(agent, AgentProfile):
            if not agent.agent_type.strip():
                raise ValueError("agent type must not be empty")
            return agent
        return self.registry.resolve(agent)

    def recommend(self, agent: AgentProfile | str, filters: RouteFilters | None = None) -> Recommendation:
        """Return the single best next task for `agent`; `task` is None when nothing fits."""
        profile = self.resolve_agent(agent)
        active_filters = filters or RouteFilters()
        started = time.perf_counter()
        now = self.clock()

        snapshot = self.repository.snapshot()
        specs = {spec.id: spec for spec in snapshot.specs}
        total_available = 0
        scored: list[Candidate] = []
        for task in snapshot.list_tasks(active_filters):
            if not is_available(task, snapshot):
                continue
            total_available += 1
            if not capabilities_match(task, profile):
                continue
            spec = specs[task.spec_id]
            score = score_task(task=task, agent=profile, snapshot=snapshot, weights=self.weights, now=now)
            scored.append(Candidate(task=task, spec_status=spec.status, phase=spec.phase, score=score))

        scored.sort(key=lambda item: candidate_sort_key(item.task, item.score))
        metadata = RecommendationMetadata(
            total_available=total_available,
            agent_matches=len(scored),
            agent_known=profile.known,
            generated_at=format_timestamp(now),
        )

        if scored:
            best = scored[0]
            recommendation = Recommendation(
                agent=profile,
                filters=active_filters,
                task=best.task,
                score=best.score,
                reasoning=build_reasoning(best.task, best.score),
                alternatives=tuple(scored[1 : 1 + self.max_alternatives]),
                metadata=metadata,
            )
        else:
            recommendation = Recommendation(
                agent=profile,
                filters=active_filters,
                task=None,
                score=None,
                reasoning=(),
                alternatives=(),
                metadata=metadata,
            )

        elapsed = time.perf_counter() - started
        self._record(recommendation, elapsed)
        return recommendation

    def _record(self, recommendation: Recommendation, elapsed: float) -> None:
        if elapsed > self.performance_target_seconds:
            logger.warning(
                "Routing for %s took %.2fs (target %.2fs)",
                recommendation.agent.agent_type,
                elapsed,
                self.performance_target_seconds,
            )
            if self.audit is not None:
                self.audit.record(
                    EVENT_PERFORMANCE_WARNING,
                    {
                        "operation": "recommend",
                        "agent": recommendation.agent.agent_type,
                        "elapsed_seconds": round(elapsed, 3),
                        "target_seconds": self.performance_target_seconds,
                    },
                )
        if self.audit is not None:
            self.audit.record(
                EVENT_RECOMMENDATION,
                {
                    "agent": recommendation.agent.agent_type,
                    "filters": recommendation.filters.to_dict(),
                    "task": recommendation.task.ref.key if recommendation.task is not None else None,
                    "score": recommendation.score.total if recommendation.score is not None else None,
                    "alternatives": [item.task.ref.key for item in recommendation.alternatives],
                    "total_available": recommendation.metadata.total_available,
                    "agent_matches": recommendation.metadata.agent_matches,
                },
            )


def build_reasoning(task: Task, score: ScoreBreakdown) -> tuple[str, ...]:
    """One human-readable line per scoring factor."""
    if not task.required_capabilities:
        fit_label = "no capabilities required"
    elif "capabilities:exact" in score.reasons:
        fit_label = "exact capability match"
    else:
        fit_label = "agent capabilities cover requirements"

    lines = [
        f"Priority {task.priority.value}: +{score.priority}",
        f"Capability fit ({fit_label}): +{score.capability_fit}",
    ]
    if score.fan_out_count:
        lines.append(f"Unblocks {score.fan_out_count} dependent task(s): +{score.fan_out}")
    else:
        lines.append("No dependent tasks waiting: +0")
    if score.staleness:
        lines.append(f"Waiting in ready: +{score.staleness}")
    else:
        lines.append("Recently readied: +0")
    lines.append(f"Total score: {score.total}")
    return tuple(lines)
