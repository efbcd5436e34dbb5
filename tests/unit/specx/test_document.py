from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from specx.errors import CorruptStateError, NotFoundError
from specx.repository import SpecRepository
from specx.router.types import Priority, RouteFilters, SpecStatus, TaskRef, TaskStatus
from specx.state.document import SpecDocument, parse_spec, split_frontmatter
from tests.unit.specx.spec_test_utils import write_spec

if TYPE_CHECKING:
    from pathlib import Path


class TestParsing:
    def test_defaults_and_inheritance(self) -> None:
        spec = parse_spec(
            {
                "id": "S1",
                "priority": "p1",
                "tasks": {
                    "T1": {"capabilities": ["db", "db", " "]},
                    "T2": {"priority": "P3", "depends_on": ["T1", "S2:T9"], "estimated_hours": 4},
                    "T3": None,
                },
            }
        )

        assert spec.status is SpecStatus.ACTIVE
        assert spec.title == "S1"
        first, second, third = spec.tasks
        assert first.status is TaskStatus.BACKLOG
        assert first.priority is Priority.P1
        assert first.required_capabilities == frozenset({"db"})
        assert second.priority is Priority.P3
        assert second.dependencies == (TaskRef("S1", "T1"), TaskRef("S2", "T9"))
        assert second.estimated_hours == 4.0
        assert third.title == "T3"

    def test_unquoted_timestamps_are_normalized(self) -> None:
        header, _ = split_frontmatter(
            "---\nid: S1\ntasks:\n  T1:\n    status: ready\n    ready_since: 2026-03-01T08:00:00Z\n---\n"
        )

        task = parse_spec(header).tasks[0]

        assert task.ready_since == "2026-03-01T08:00:00Z"

    @pytest.mark.parametrize(
        "frontmatter",
        [
            {"title": "no id"},
            {"id": "S1", "status": "paused"},
            {"id": "S1", "tasks": ["T1"]},
            {"id": "S1", "tasks": {"T1": {"status": "doing"}}},
            {"id": "S1", "tasks": {"T1": {"estimated_hours": "lots"}}},
            {"id": "S1", "tasks": {"T1": {"depends_on": [":T2"]}}},
            {"id": "S1", "status": "done", "tasks": {"T1": {"status": "ready"}}},
        ],
    )
    def test_invalid_frontmatter_is_corrupt(self, frontmatter: dict) -> None:
        with pytest.raises(CorruptStateError):
            parse_spec(frontmatter)

    @pytest.mark.parametrize(
        "text",
        ["no frontmatter\n", "---\nid: S1\n", "---\n- a\n- b\n---\n", "---\nid: [\n---\n"],
    )
    def test_bad_documents_are_corrupt(self, text: str) -> None:
        with pytest.raises(CorruptStateError):
            split_frontmatter(text)


class TestWriteBack:
    def test_task_updates_preserve_body_and_drop_cleared_fields(self, tmp_path: Path) -> None:
        path = write_spec(
            tmp_path,
            "S1",
            {"T1": {"title": "schema", "status": "in_progress", "assignee": "db-agent", "started_at": "x"}},
            body="# Design\n\n---\n\nA horizontal rule stays in the body.\n",
        )
        document = SpecDocument.load(path)

        updated = document.with_task_fields("T1", {"status": "ready", "assignee": None, "started_at": None})
        rendered = updated.render()

        assert rendered.endswith("# Design\n\n---\n\nA horizontal rule stays in the body.\n")
        assert SpecDocument.load(path).frontmatter["tasks"]["T1"]["assignee"] == "db-agent"
        assert updated.frontmatter["tasks"]["T1"] == {"title": "schema", "status": "ready"}
        assert document.frontmatter["tasks"]["T1"]["status"] == "in_progress"

    def test_only_state_fields_are_writable(self, tmp_path: Path) -> None:
        document = SpecDocument.load(write_spec(tmp_path, "S1", {"T1": {"status": "ready"}}))

        with pytest.raises(ValueError):
            document.with_task_fields("T1", {"title": "renamed"})
        with pytest.raises(CorruptStateError):
            document.with_task_fields("T9", {"status": "ready"})


class TestRepository:
    def test_snapshot_orders_specs_and_skips_plain_markdown(self, tmp_path: Path) -> None:
        write_spec(tmp_path, "S2", {"T1": {"status": "ready"}})
        write_spec(tmp_path, "S1", {"T1": {"status": "ready"}})
        (tmp_path / "specs" / "README.md").write_text("# Specs\n", encoding="utf-8")
        repository = SpecRepository(tmp_path / "specs")

        assert [spec.id for spec in repository.list_specs()] == ["S1", "S2"]

    def test_duplicate_spec_ids_are_corrupt(self, tmp_path: Path) -> None:
        path = write_spec(tmp_path, "S1", {})
        (tmp_path / "specs" / "copy.md").write_text(path.read_text(encoding="utf-8"), encoding="utf-8")

        with pytest.raises(CorruptStateError, match="duplicate"):
            SpecRepository(tmp_path / "specs").snapshot()

    def test_lookups_raise_not_found(self, tmp_path: Path) -> None:
        write_spec(tmp_path, "S1", {"T1": {"status": "ready"}})
        repository = SpecRepository(tmp_path / "specs")

        assert repository.get_task("S1", "T1").title == "T1"
        with pytest.raises(NotFoundError):
            repository.get_spec("S9")
        with pytest.raises(NotFoundError):
            repository.get_task("S1", "T9")
        with pytest.raises(NotFoundError):
            repository.load_document("S9")

    def test_list_tasks_applies_filters(self, tmp_path: Path) -> None:
        write_spec(tmp_path, "S1", {"T1": {"priority": "P0"}, "T2": {}}, phase="build")
        write_spec(tmp_path, "S2", {"T1": {"status": "complete"}}, status="done")
        repository = SpecRepository(tmp_path / "specs")

        assert len(repository.list_tasks()) == 3
        assert [task.ref.key for task in repository.list_tasks(RouteFilters())] == ["S1:T1", "S1:T2"]
        critical = repository.list_tasks(RouteFilters(priorities=frozenset({Priority.P0})))
        assert [task.ref.key for task in critical] == ["S1:T1"]

    def test_dependency_chain_reports_both_directions(self, tmp_path: Path) -> None:
        write_spec(
            tmp_path,
            "S1",
            {
                "T1": {"status": "complete"},
                "T2": {"status": "blocked", "depends_on": ["T1", "S3:T1"]},
                "T3": {"status": "blocked", "depends_on": ["T2"]},
            },
        )
        repository = SpecRepository(tmp_path / "specs")

        chain = repository.dependency_chain(TaskRef("S1", "T2")).to_dict()

        assert chain["dependencies"] == [
            {"ref": "S1:T1", "status": "complete"},
            {"ref": "S3:T1", "status": "missing"},
        ]
        assert chain["blocked_by"] == ["S3:T1"]
        assert chain["dependents"] == [{"ref": "S1:T3", "status": "blocked"}]
