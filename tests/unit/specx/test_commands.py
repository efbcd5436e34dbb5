"""End-to-end start-next / complete-current workflows."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from specx.commands import complete_current, start_next
from specx.errors import ErrorKind
from specx.router.types import RouteFilters, TaskRef
from tests.unit.specx.spec_test_utils import event_types, make_engine, task_entry, write_agents, write_spec

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    write_agents(tmp_path)
    write_spec(
        tmp_path,
        "S1",
        {
            "T1": {"title": "migrate schema", "status": "ready", "priority": "P0", "capabilities": ["db"]},
            "T2": {"title": "wire api", "status": "blocked", "depends_on": ["T1"]},
        },
    )
    return tmp_path


def test_route_assign_complete_unblock(repo: Path) -> None:
    engine = make_engine(repo)

    assert engine.router.recommend("db-agent").task.ref == TaskRef("S1", "T1")

    started = start_next(engine, "db-agent", confirm_critical=True)

    assert started.success is True
    assert started.assignment is not None
    assert started.assignment.ref == TaskRef("S1", "T1")
    assert started.to_dict()["assigned"]["agent"] == "db-agent"
    assert task_entry(repo / "specs" / "s1.md", "T1")["status"] == "in_progress"

    finished = complete_current(engine, agent="db-agent", notes="done")

    assert finished.success is True
    assert finished.completion is not None
    assert finished.completion.unblocked == (TaskRef("S1", "T2"),)
    assert task_entry(repo / "specs" / "s1.md", "T2")["status"] == "ready"
    assert engine.manager.check_consistency().ok
    assert finished.suggestions[0] == "Unblocked 1 task(s): S1:T2"

    types = event_types(engine)
    assert types.index("task.transition") < types.index("handoff.cascade")


def test_critical_task_is_refused_without_confirmation(repo: Path) -> None:
    engine = make_engine(repo)

    result = start_next(engine, "db-agent")

    assert result.success is False
    assert result.refused is True
    assert result.error_kind is ErrorKind.VALIDATION_BLOCKED
    assert "Re-run with --confirm-critical" in result.suggestions
    assert task_entry(repo / "specs" / "s1.md", "T1")["status"] == "ready"


def test_dry_run_validates_without_writing(repo: Path) -> None:
    engine = make_engine(repo)
    before = (repo / "specs" / "s1.md").read_text(encoding="utf-8")

    result = start_next(engine, "db-agent", dry_run=True, confirm_critical=True)

    assert result.success is True
    assert result.dry_run is True
    assert result.assignment is None
    assert result.validation is not None and result.validation.can_proceed
    assert (repo / "specs" / "s1.md").read_text(encoding="utf-8") == before
    assert not (repo / ".specx" / "state" / "tasks.json").exists()


def test_workload_limit_refuses_until_override(tmp_path: Path) -> None:
    write_agents(tmp_path)
    write_spec(tmp_path, "S1", {f"T{index}": {"status": "ready"} for index in range(1, 5)})
    engine = make_engine(tmp_path)
    for _ in range(3):
        assert start_next(engine, "db-agent").success

    refused = start_next(engine, "db-agent")
    forced = start_next(engine, "db-agent", override_workload=True)

    assert refused.refused is True
    assert [item.code for item in refused.validation.violations] == ["workload_limit"]
    assert forced.success is True
    assert forced.assignment is not None and forced.assignment.ref.key == "S1:T4"
    assert [item.code for item in forced.validation.warnings] == ["workload_override"]


class TestNoTask:
    def test_nothing_ready_suggests_dependencies(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S1", {"T1": {"status": "blocked"}})
        engine = make_engine(tmp_path)

        result = start_next(engine, "db-agent", RouteFilters.from_strings(priorities=["P1"]))

        assert result.success is False
        assert result.refused is True
        assert result.error == "No eligible task found"
        assert result.suggestions[0] == "No ready tasks with complete dependencies exist right now"
        assert "Relax the --priority, --phase or --spec-status filters" in result.suggestions

    def test_capability_mismatch_names_the_agent(self, repo: Path) -> None:
        engine = make_engine(repo)

        result = start_next(engine, "docs-writer")

        assert result.error == "No eligible task found"
        assert "none match the capabilities of docs-writer" in result.suggestions[0]

    def test_unknown_agent_is_told_to_register(self, repo: Path) -> None:
        engine = make_engine(repo)

        result = start_next(engine, "ghost")

        assert "Register ghost in .specx/runtime/agents.yaml" in result.suggestions

    def test_empty_agent_is_invalid_request(self, repo: Path) -> None:
        engine = make_engine(repo)

        result = start_next(engine, "  ")

        assert result.error_kind is ErrorKind.INVALID_REQUEST
        assert result.refused is False
        failed = engine.audit.query()
        assert [event.event_type for event in failed] == ["command.failed"]
        assert failed[0].payload["command"] == "start_next"
        assert failed[0].payload["error"]["kind"] == "invalid_request"


class TestCompleteCurrent:
    def test_no_assignment_is_not_found(self, repo: Path) -> None:
        engine = make_engine(repo)

        result = complete_current(engine, agent="db-agent")

        assert result.success is False
        assert result.error_kind is ErrorKind.NOT_FOUND
        failed = engine.audit.query()
        assert [event.event_type for event in failed] == ["command.failed"]
        assert failed[0].payload["agent"] == "db-agent"
        assert failed[0].payload["error"]["kind"] == "not_found"

    def test_multiple_assignments_must_be_named(self, tmp_path: Path) -> None:
        write_agents(tmp_path)
        write_spec(tmp_path, "S1", {"T1": {"status": "ready"}, "T2": {"status": "ready"}})
        engine = make_engine(tmp_path)
        start_next(engine, "db-agent")
        start_next(engine, "db-agent")

        ambiguous = complete_current(engine, agent="db-agent")
        by_bare_id = complete_current(engine, agent="db-agent", task_id="T2")
        by_ref = complete_current(engine, task_id="S1:T1")

        assert ambiguous.error_kind is ErrorKind.INVALID_REQUEST
        assert "S1:T1, S1:T2" in (ambiguous.error or "")
        assert by_bare_id.success is True and by_bare_id.task == TaskRef("S1", "T2")
        assert by_ref.success is True

    def test_spec_without_task_is_invalid(self, repo: Path) -> None:
        result = complete_current(make_engine(repo), spec_id="S1")

        assert result.error_kind is ErrorKind.INVALID_REQUEST

    def test_dry_run_previews_unblocks(self, repo: Path) -> None:
        engine = make_engine(repo)
        start_next(engine, "db-agent", confirm_critical=True)

        preview = complete_current(engine, agent="db-agent", dry_run=True)

        assert preview.success is True
        assert preview.would_unblock == (TaskRef("S1", "T2"),)
        assert task_entry(repo / "specs" / "s1.md", "T1")["status"] == "in_progress"
        assert preview.to_dict()["would_unblock"] == ["S1:T2"]

    def test_dry_run_on_ready_task_is_refused(self, repo: Path) -> None:
        engine = make_engine(repo)

        preview = complete_current(engine, spec_id="S1", task_id="T1", dry_run=True)

        assert preview.success is False
        assert preview.error_kind is ErrorKind.INVALID_REQUEST
        failed = engine.audit.query()
        assert [event.event_type for event in failed] == ["command.failed"]
        assert failed[0].payload["task"] == "S1:T1"
        assert failed[0].payload["dry_run"] is True
        assert task_entry(repo / "specs" / "s1.md", "T1")["status"] == "ready"

    def test_failed_handoff_points_at_the_rerun_command(self, repo: Path) -> None:
        engine = make_engine(repo)
        start_next(engine, "db-agent", confirm_critical=True)
        write_spec(repo, "S9", {"X": {"status": "ready"}}, status="done")

        finished = complete_current(engine, agent="db-agent")

        assert finished.success is True
        assert finished.suggestions[0].endswith("run `specx handoff --task S1:T1`")
        assert task_entry(repo / "specs" / "s1.md", "T1")["status"] == "complete"
