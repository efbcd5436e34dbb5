"""Eligibility, scoring and ordering coverage for the task router."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from specx.router.types import AgentProfile, Priority, RouteFilters, SpecStatus
from tests.unit.specx.spec_test_utils import event_types, make_engine, write_agents, write_spec

if TYPE_CHECKING:
    from pathlib import Path


class TestEligibility:
    """Only ready tasks with complete dependencies and covered capabilities qualify."""

    def test_skips_non_ready_and_unmet_dependencies(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"title": "in flight", "status": "in_progress", "assignee": "db-agent"},
                "T2": {"title": "waiting", "status": "ready", "depends_on": ["T1"]},
                "T3": {"title": "missing dep", "status": "ready", "depends_on": ["S9:T1"]},
                "T4": {"title": "eligible", "status": "ready"},
            },
        )
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("db-agent")

        assert recommendation.task is not None
        assert recommendation.task.ref.key == "S1:T4"
        assert recommendation.alternatives == ()
        assert recommendation.metadata.total_available == 1

    def test_capabilities_must_be_covered(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"status": "ready", "capabilities": ["react"]},
                "T2": {"status": "ready", "capabilities": ["db"]},
            },
        )
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("db-agent")

        assert recommendation.task is not None
        assert recommendation.task.id == "T2"
        assert recommendation.metadata.total_available == 2
        assert recommendation.metadata.agent_matches == 1

    def test_done_specs_excluded_unless_requested(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S1", {"T1": {"status": "complete"}}, status="done")
        engine = make_engine(tmp_path)

        assert engine.router.recommend("db-agent").task is None

    def test_no_candidates_is_a_normal_outcome(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S1", {"T1": {"status": "ready", "capabilities": ["react"]}})
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("db-agent")

        assert recommendation.found is False
        assert recommendation.score is None
        assert recommendation.metadata.total_available == 1
        assert recommendation.metadata.agent_matches == 0

    def test_filters_restrict_priority_and_phase(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S1", {"T1": {"status": "ready", "priority": "P1"}}, phase="build")
        write_spec(tmp_path, "S2", {"T1": {"status": "ready", "priority": "P3"}}, phase="polish")
        engine = make_engine(tmp_path)

        by_phase = engine.router.recommend("db-agent", RouteFilters(phases=frozenset({"polish"})))
        by_priority = engine.router.recommend("db-agent", RouteFilters(priorities=frozenset({Priority.P1})))

        assert by_phase.task is not None and by_phase.task.ref.key == "S2:T1"
        assert by_priority.task is not None and by_priority.task.ref.key == "S1:T1"

    def test_spec_status_filter_can_include_backlog_only(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S1", {"T1": {"status": "ready"}}, status="active")
        write_spec(tmp_path, "S2", {"T1": {"status": "ready"}}, status="backlog")
        engine = make_engine(tmp_path)

        filters = RouteFilters(spec_statuses=frozenset({SpecStatus.BACKLOG}))
        recommendation = engine.router.recommend("db-agent", filters)

        assert recommendation.task is not None
        assert recommendation.task.spec_id == "S2"
        assert recommendation.metadata.total_available == 1

    def test_candidates_are_the_ready_subset_of_listed_tasks(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"status": "ready", "priority": "P1"},
                "T2": {"status": "ready", "priority": "P3"},
                "T3": {"status": "blocked", "priority": "P1", "depends_on": ["T1"]},
            },
            phase="build",
        )
        write_spec(tmp_path, "S2", {"T1": {"status": "ready", "priority": "P1"}}, phase="polish")
        write_spec(tmp_path, "S3", {"T1": {"status": "complete", "priority": "P1"}}, status="done", phase="build")
        engine = make_engine(tmp_path)
        filters = RouteFilters(priorities=frozenset({Priority.P1}), phases=frozenset({"build"}))

        listed = [task.ref.key for task in engine.repository.list_tasks(filters)]
        recommendation = engine.router.recommend("db-agent", filters)

        assert listed == ["S1:T1", "S1:T3"]
        assert recommendation.task is not None and recommendation.task.ref.key == "S1:T1"
        assert recommendation.metadata.total_available == 1

    def test_empty_agent_type_is_rejected(self, tmp_path: Path) -> None:
        write_spec(tmp_path, "S1", {"T1": {"status": "ready"}})
        engine = make_engine(tmp_path)

        with pytest.raises(ValueError):
            engine.router.recommend("  ")

    def test_unknown_agent_only_gets_tasks_without_requirements(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"status": "ready", "capabilities": ["db"]},
                "T2": {"status": "ready"},
            },
        )
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("mystery-agent")

        assert recommendation.agent.known is False
        assert recommendation.metadata.agent_known is False
        assert recommendation.task is not None and recommendation.task.id == "T2"


class TestScoring:
    def test_factor_contributions(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {
                    "status": "ready",
                    "priority": "P1",
                    "capabilities": ["db"],
                    "ready_since": "2026-02-27T12:00:00Z",
                },
                "T2": {"status": "blocked", "depends_on": ["T1"]},
                "T3": {"status": "backlog", "depends_on": ["T1"]},
            },
        )
        write_spec(tmp_path, "S2", {"T9": {"status": "blocked", "depends_on": ["S1:T1"]}})
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("db-agent")

        score = recommendation.score
        assert score is not None
        assert score.priority == 30
        assert score.capability_fit == 15
        assert score.fan_out == 15
        assert score.fan_out_count == 3
        assert score.staleness == 3
        assert score.total == 63
        assert recommendation.reasoning[-1] == "Total score: 63"

    def test_superset_and_no_requirement_fit(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"status": "ready", "capabilities": ["db"]},
                "T2": {"status": "ready"},
            },
            priority="P2",
        )
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("backend-dev")

        assert recommendation.task is not None and recommendation.task.id == "T1"
        assert recommendation.score is not None and recommendation.score.capability_fit == 8
        assert recommendation.alternatives[0].score.capability_fit == 4

    def test_fan_out_and_staleness_are_capped(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        dependents = {f"D{index}": {"status": "blocked", "depends_on": ["T1"]} for index in range(7)}
        write_spec(
            tmp_path,
            "S1",
            {"T1": {"status": "ready", "ready_since": "2026-01-01T00:00:00Z"}, **dependents},
        )
        engine = make_engine(tmp_path)

        score = engine.router.recommend("db-agent").score

        assert score is not None
        assert score.fan_out == 25
        assert score.staleness == 5

    def test_completed_dependents_do_not_count(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"status": "ready"},
                "T2": {"status": "complete", "depends_on": ["T1"]},
                "T3": {"status": "blocked", "depends_on": ["T1"]},
            },
        )
        engine = make_engine(tmp_path)

        score = engine.router.recommend("db-agent").score

        assert score is not None
        assert score.fan_out_count == 1
        assert score.fan_out == 5


class TestOrdering:
    def test_priority_breaks_score_ties(self, tmp_path: Path) -> None:
        write_agents(tmp_path, {"generalist": ["db"]})
        # P2 exact match (20+15) ties P1 without requirements after one day ready (30+4+1).
        write_spec(
            tmp_path,
            "S1",
            {
                "A": {"status": "ready", "priority": "P2", "capabilities": ["db"]},
                "B": {"status": "ready", "priority": "P1", "ready_since": "2026-03-01T09:00:00Z"},
            },
        )
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("generalist")

        assert recommendation.task is not None and recommendation.task.id == "B"
        assert recommendation.score is not None and recommendation.score.total == 35
        assert recommendation.alternatives[0].task.id == "A"
        assert recommendation.alternatives[0].score.total == 35

    def test_task_id_then_spec_id_break_remaining_ties(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S2", {"T1": {"status": "ready"}, "T0": {"status": "ready"}})
        write_spec(tmp_path, "S1", {"T1": {"status": "ready"}})
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("db-agent")

        ordered = [recommendation.task.ref.key] + [item.task.ref.key for item in recommendation.alternatives]
        assert ordered == ["S2:T0", "S1:T1", "S2:T1"]

    def test_alternatives_limited_by_config(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S1", {f"T{index}": {"status": "ready"} for index in range(6)})
        engine = make_engine(tmp_path)

        recommendation = engine.router.recommend("db-agent")

        assert len(recommendation.alternatives) == 3

    def test_recommendation_is_deterministic_and_audited(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"status": "ready", "priority": "P1"},
                "T2": {"status": "ready", "priority": "P1"},
                "T3": {"status": "ready", "priority": "P0"},
            },
        )
        engine = make_engine(tmp_path)

        first = engine.router.recommend(AgentProfile("db-agent", frozenset({"db"})))
        second = engine.router.recommend(AgentProfile("db-agent", frozenset({"db"})))

        assert first == second
        assert first.task is not None and first.task.id == "T3"
        assert event_types(engine).count("route.recommended") == 2
