"""Read-only access to specs and tasks parsed from spec documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from specx.errors import CorruptStateError, NotFoundError
from specx.router.types import TERMINAL_SPEC_STATUSES, Spec, Task, TaskRef, TaskStatus
from specx.state.document import FRONTMATTER_DELIMITER, SPEC_DOCUMENT_SUFFIX, SpecDocument

if TYPE_CHECKING:
    from pathlib import Path

    from specx.router.types import RouteFilters

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyChain:
    """Dependency neighbourhood of one task."""

    task: Task
    dependencies: tuple[tuple[TaskRef, TaskStatus | None], ...]
    blocked_by: tuple[TaskRef, ...]
    dependents: tuple[Task, ...]

    def to_dict(self) -> dict[str, object]:
        return {
            "task": self.task.ref.key,
            "status": self.task.status.value,
            "dependencies": [
                {"ref": ref.key, "status": status.value if status is not None else "missing"}
                for ref, status in self.dependencies
            ],
            "blocked_by": [ref.key for ref in self.blocked_by],
            "dependents": [
                {"ref": item.ref.key, "status": item.status.value} for item in self.dependents
            ],
        }


@dataclass(frozen=True)
class SpecSnapshot:
    """Point-in-time view of every spec, indexed for lookups."""

    specs: tuple[Spec, ...]

    def spec(self, spec_id: str) -> Spec | None:
        for spec in self.specs:
            if spec.id == spec_id:
                return spec
        return None

    def task(self, ref: TaskRef) -> Task | None:
        spec = self.spec(ref.spec_id)
        if spec is None:
            return None
        return spec.task(ref.task_id)

    def tasks(self) -> list[Task]:
        return [task for spec in self.specs for task in spec.tasks]

    def dependency_status(self, ref: TaskRef) -> TaskStatus | None:
        task = self.task(ref)
        return task.status if task is not None else None

    def unmet_dependencies(self, task: Task) -> list[TaskRef]:
        """Dependencies not complete; a missing dependency counts as unmet."""
        return [ref for ref in task.dependencies if self.dependency_status(ref) is not TaskStatus.COMPLETE]

    def dependents_of(self, ref: TaskRef) -> list[Task]:
        return [task for task in self.tasks() if ref in task.dependencies]

    def list_tasks(self, filters: RouteFilters | None = None) -> list[Task]:
        """Tasks in spec order, narrowed by spec status, phase and task priority.

        Without filters every task is listed. With filters, done specs are
        skipped unless a spec-status filter names them.
        """
        if filters is None:
            return self.tasks()
        tasks: list[Task] = []
        for spec in self.specs:
            if filters.spec_statuses:
                if spec.status not in filters.spec_statuses:
                    continue
            elif spec.status in TERMINAL_SPEC_STATUSES:
                continue
            if filters.phases and spec.phase not in filters.phases:
                continue
            tasks.extend(task for task in spec.tasks if not filters.priorities or task.priority in filters.priorities)
        return tasks


class SpecRepository:
    """Loads spec documents from `specs_dir`; every call reads fresh state."""

    def __init__(self, specs_dir: Path) -> None:
        self.specs_dir = specs_dir

    def documents(self) -> dict[str, SpecDocument]:
        if not self.specs_dir.exists():
            return {}
        documents: dict[str, SpecDocument] = {}
        for path in sorted(self.specs_dir.glob(f"*{SPEC_DOCUMENT_SUFFIX}")):
            if not path.is_file():
                continue
            if not path.read_text(encoding="utf-8").startswith(FRONTMATTER_DELIMITER):
                logger.debug("Skipping %s: no frontmatter", path)
                continue
            document = SpecDocument.load(path)
            spec_id = document.spec_id
            if spec_id in documents:
                raise CorruptStateError(
                    f"duplicate spec id `{spec_id}` in {documents[spec_id].path} and {path}"
                )
            documents[spec_id] = document
        return documents

    def load_document(self, spec_id: str) -> SpecDocument:
        document = self.documents().get(spec_id)
        if document is None:
            raise NotFoundError(f"Spec `{spec_id}` not found in {self.specs_dir}", detail={"spec_id": spec_id})
        return document

    def snapshot(self) -> SpecSnapshot:
        specs = sorted((document.to_spec() for document in self.documents().values()), key=lambda item: item.id)
        return SpecSnapshot(specs=tuple(specs))

    def list_specs(self) -> list[Spec]:
        return list(self.snapshot().specs)

    def list_tasks(self, filters: RouteFilters | None = None) -> list[Task]:
        return self.snapshot().list_tasks(filters)

    def get_spec(self, spec_id: str) -> Spec:
        spec = self.snapshot().spec(spec_id)
        if spec is None:
            raise NotFoundError(f"Spec `{spec_id}` not found in {self.specs_dir}", detail={"spec_id": spec_id})
        return spec

    def get_task(self, spec_id: str, task_id: str) -> Task:
        spec = self.get_spec(spec_id)
        task = spec.task(task_id)
        if task is None:
            raise NotFoundError(
                f"Task `{task_id}` not found in spec `{spec_id}`",
                detail={"spec_id": spec_id, "task_id": task_id},
            )
        return task

    def dependents_of(self, ref: TaskRef) -> list[Task]:
        return self.snapshot().dependents_of(ref)

    def dependency_chain(self, ref: TaskRef) -> DependencyChain:
        snapshot = self.snapshot()
        task = snapshot.task(ref)
        if task is None:
            raise NotFoundError(f"Task `{ref.key}` not found", detail={"ref": ref.key})
        return DependencyChain(
            task=task,
            dependencies=tuple((dep, snapshot.dependency_status(dep)) for dep in task.dependencies),
            blocked_by=tuple(snapshot.unmet_dependencies(task)),
            dependents=tuple(snapshot.dependents_of(ref)),
        )
