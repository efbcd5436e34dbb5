"""Task routing: agent registry, scoring and recommendation."""

from specx.router.agents import ensure_default_agents, load_agents
from specx.router.planner import TaskRouter, build_reasoning
from specx.router.reporting import recommendation_to_dict, render_explanation

__all__ = [
    "TaskRouter",
    "build_reasoning",
    "ensure_default_agents",
    "load_agents",
    "recommendation_to_dict",
    "render_explanation",
]
