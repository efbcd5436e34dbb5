"""Deterministic recommendation report rendering."""

from __future__ import annotations

from typing import Any

from specx.router.scoring import score_to_confidence
from specx.router.types import Candidate, Recommendation, RoutingWeights


def candidate_to_dict(candidate: Candidate) -> dict[str, Any]:
    task = candidate.task
    return {
        "task": task.ref.key,
        "spec_id": task.spec_id,
        "task_id": task.id,
        "title": task.title,
        "priority": task.priority.value,
        "phase": candidate.phase,
        "scores": candidate.score.to_dict(),
        "reasons": list(candidate.score.reasons),
    }


def recommendation_to_dict(
    recommendation: Recommendation,
    weights: RoutingWeights | None = None,
) -> dict[str, Any]:
    """Convert a recommendation to a deterministic JSON payload."""
    task = recommendation.task
    score = recommendation.score
    payload: dict[str, Any] = {
        "agent": {
            "type": recommendation.agent.agent_type,
            "capabilities": sorted(recommendation.agent.capabilities),
            "known": recommendation.agent.known,
        },
        "filters": recommendation.filters.to_dict(),
        "found": recommendation.found,
        "task": None,
        "reasoning": list(recommendation.reasoning),
        "alternatives": [candidate_to_dict(item) for item in recommendation.alternatives],
        "metadata": {
            "total_available": recommendation.metadata.total_available,
            "agent_matches": recommendation.metadata.agent_matches,
            "agent_known": recommendation.metadata.agent_known,
            "generated_at": recommendation.metadata.generated_at,
        },
    }
    if task is not None and score is not None:
        payload["task"] = {
            "task": task.ref.key,
            "spec_id": task.spec_id,
            "task_id": task.id,
            "title": task.title,
            "priority": task.priority.value,
            "capabilities": sorted(task.required_capabilities),
            "depends_on": [ref.key for ref in task.dependencies],
            "estimated_hours": task.estimated_hours,
            "context": list(task.context_requirements),
            "scores": score.to_dict(),
            "confidence": score_to_confidence(score.total, weights or RoutingWeights()),
        }
    return payload


def render_explanation(recommendation: Recommendation) -> str:
    """Plain-text explanation of why the top task was chosen."""
    lines = [
        f"agent: {recommendation.agent.agent_type}",
        f"known_agent: {recommendation.agent.known}",
        f"total_available: {recommendation.metadata.total_available}",
        f"agent_matches: {recommendation.metadata.agent_matches}",
    ]
    if recommendation.task is None or recommendation.score is None:
        lines.append("task: none")
        return "\n".join(lines)

    lines.append(f"task: {recommendation.task.ref.key}")
    lines.append(f"score_total: {recommendation.score.total}")
    lines.append("reasoning:")
    lines.extend(f"- {line}" for line in recommendation.reasoning)
    if recommendation.alternatives:
        lines.append("alternatives:")
        lines.extend(
            f"- {item.task.ref.key} ({item.score.total})" for item in recommendation.alternatives
        )
    return "\n".join(lines)

