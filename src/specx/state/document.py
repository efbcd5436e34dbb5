"""Human-readable spec documents: markdown with YAML frontmatter."""

from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]

from specx.artifacts.canonical_json import atomic_write_text
from specx.clock import format_timestamp
from specx.errors import CorruptStateError
from specx.router.types import Priority, Spec, SpecStatus, Task, TaskRef, TaskStatus

FRONTMATTER_DELIMITER = "---"
SPEC_DOCUMENT_SUFFIX = ".md"

# Frontmatter task keys written back by the state manager.
MUTABLE_TASK_FIELDS = ("status", "assignee", "started_at", "ready_since", "completed_at")


@dataclass(frozen=True)
class SpecDocument:
    """Parsed spec document; `raw` is the exact text it was read from."""

    path: Path
    frontmatter: dict[str, Any]
    body: str
    raw: str

    @classmethod
    def load(cls, path: Path) -> SpecDocument:
        raw = path.read_text(encoding="utf-8")
        frontmatter, body = split_frontmatter(raw, source=path)
        return cls(path=path, frontmatter=frontmatter, body=body, raw=raw)

    @property
    def spec_id(self) -> str:
        return _required_str(self.frontmatter.get("id"), "id", self.path)

    def to_spec(self) -> Spec:
        return parse_spec(self.frontmatter, path=self.path)

    def render(self) -> str:
        return render_document(self.frontmatter, self.body)

    def with_task_fields(self, task_id: str, updates: dict[str, Any]) -> SpecDocument:
        """Return a copy with `updates` applied to one task entry."""
        frontmatter = copy.deepcopy(self.frontmatter)
        tasks = frontmatter.get("tasks")
        if not isinstance(tasks, dict):
            raise CorruptStateError(f"{self.path}: `tasks` must be a mapping")
        key = _find_task_key(tasks, task_id)
        if key is None:
            raise CorruptStateError(f"{self.path}: task `{task_id}` is not declared")
        entry = tasks[key]
        if entry is None:
            entry = {}
            tasks[key] = entry
        for field_name, value in updates.items():
            if field_name not in MUTABLE_TASK_FIELDS:
                raise ValueError(f"task field `{field_name}` is not writable")
            if value is None:
                entry.pop(field_name, None)
            else:
                entry[field_name] = value
        return SpecDocument(path=self.path, frontmatter=frontmatter, body=self.body, raw=self.raw)

    def with_spec_status(self, status: SpecStatus) -> SpecDocument:
        frontmatter = copy.deepcopy(self.frontmatter)
        frontmatter["status"] = status.value
        return SpecDocument(path=self.path, frontmatter=frontmatter, body=self.body, raw=self.raw)


def split_frontmatter(text: str, *, source: Path | None = None) -> tuple[dict[str, Any], str]:
    """Split a document into its frontmatter mapping and untouched body."""
    label = str(source) if source is not None else "<document>"
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].rstrip("\r\n") != FRONTMATTER_DELIMITER:
        raise CorruptStateError(f"{label}: missing YAML frontmatter")

    for index in range(1, len(lines)):
        if lines[index].rstrip("\r\n") == FRONTMATTER_DELIMITER:
            header = "".join(lines[1:index])
            body = "".join(lines[index + 1 :])
            break
    else:
        raise CorruptStateError(f"{label}: unterminated YAML frontmatter")

    try:
        data = yaml.safe_load(header)
    except yaml.YAMLError as exc:
        raise CorruptStateError(f"{label}: frontmatter parse error: {exc}") from exc
    if not isinstance(data, dict):
        raise CorruptStateError(f"{label}: frontmatter must be a mapping")
    return data, body


def render_document(frontmatter: dict[str, Any], body: str) -> str:
    header = yaml.safe_dump(frontmatter, sort_keys=False, default_flow_style=False, allow_unicode=True)
    return f"{FRONTMATTER_DELIMITER}\n{header}{FRONTMATTER_DELIMITER}\n{body}"


def write_document(document: SpecDocument) -> None:
    atomic_write_text(document.path, document.render())


def restore_document(path: Path, raw: str) -> None:
    """Put back the exact text captured before a transition."""
    atomic_write_text(path, raw)


def parse_spec(frontmatter: dict[str, Any], *, path: Path | None = None) -> Spec:
    """Convert a frontmatter mapping into a validated `Spec`."""
    spec_id = _required_str(frontmatter.get("id"), "id", path)
    title = _optional_str(frontmatter.get("title")) or spec_id
    status = _enum(SpecStatus, frontmatter.get("status", SpecStatus.ACTIVE.value), "status", path)
    priority = _enum(Priority, frontmatter.get("priority", Priority.P2.value), "priority", path)
    phase = _optional_str(frontmatter.get("phase"))

    tasks_raw = frontmatter.get("tasks") or {}
    if not isinstance(tasks_raw, dict):
        raise CorruptStateError(f"{path}: `tasks` must be a mapping of task id to fields")

    tasks: list[Task] = []
    for raw_id, entry in tasks_raw.items():
        task_id = str(raw_id).strip()
        if not task_id:
            raise CorruptStateError(f"{path}: task ids must be non-empty")
        tasks.append(_parse_task(spec_id, task_id, entry or {}, priority, path))

    if status is SpecStatus.DONE:
        open_tasks = [task.id for task in tasks if task.status is not TaskStatus.COMPLETE]
        if open_tasks:
            raise CorruptStateError(
                f"{path}: spec `{spec_id}` is done but has open tasks: {', '.join(open_tasks)}"
            )

    return Spec(
        id=spec_id,
        title=title,
        status=status,
        priority=priority,
        phase=phase,
        tasks=tuple(tasks),
        path=path,
    )


def _parse_task(
    spec_id: str,
    task_id: str,
    entry: Any,
    spec_priority: Priority,
    path: Path | None,
) -> Task:
    where = f"tasks.{task_id}"
    if not isinstance(entry, dict):
        raise CorruptStateError(f"{path}: {where} must be a mapping")

    status = _enum(TaskStatus, entry.get("status", TaskStatus.BACKLOG.value), f"{where}.status", path)
    priority_raw = entry.get("priority")
    priority = spec_priority if priority_raw is None else _enum(Priority, priority_raw, f"{where}.priority", path)

    dependencies: list[TaskRef] = []
    for raw in _string_list(entry.get("depends_on"), f"{where}.depends_on", path):
        try:
            dependencies.append(TaskRef.parse(raw, default_spec=spec_id))
        except ValueError as exc:
            raise CorruptStateError(f"{path}: {where}.depends_on: {exc}") from exc

    hours_raw = entry.get("estimated_hours")
    if hours_raw is not None and (isinstance(hours_raw, bool) or not isinstance(hours_raw, int | float)):
        raise CorruptStateError(f"{path}: {where}.estimated_hours must be a number")

    return Task(
        id=task_id,
        spec_id=spec_id,
        title=_optional_str(entry.get("title")) or task_id,
        status=status,
        priority=priority,
        required_capabilities=frozenset(_string_list(entry.get("capabilities"), f"{where}.capabilities", path)),
        dependencies=tuple(dependencies),
        estimated_hours=None if hours_raw is None else float(hours_raw),
        context_requirements=tuple(_string_list(entry.get("context"), f"{where}.context", path)),
        assignee=_optional_str(entry.get("assignee")),
        started_at=_timestamp(entry.get("started_at")),
        ready_since=_timestamp(entry.get("ready_since")),
        completed_at=_timestamp(entry.get("completed_at")),
    )


def _find_task_key(tasks: dict[Any, Any], task_id: str) -> Any:
    for key in tasks:
        if str(key).strip() == task_id:
            return key
    return None


def _enum(enum_type: Any, value: Any, field_name: str, path: Path | None) -> Any:
    text = str(value).strip()
    if enum_type is Priority:
        text = text.upper()
    else:
        text = text.lower()
    try:
        return enum_type(text)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in enum_type)
        raise CorruptStateError(f"{path}: {field_name} must be one of {allowed}, got `{value}`") from exc


def _required_str(value: Any, field_name: str, path: Path | None) -> str:
    text = _optional_str(value)
    if not text:
        raise CorruptStateError(f"{path}: frontmatter `{field_name}` is required")
    return text


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _string_list(value: Any, field_name: str, path: Path | None) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        raise CorruptStateError(f"{path}: {field_name} must be a list of strings")
    items: list[str] = []
    for item in value:
        if not isinstance(item, str | int):
            raise CorruptStateError(f"{path}: {field_name} must be a list of strings")
        text = str(item).strip()
        if text:
            items.append(text)
    return items


def _timestamp(value: Any) -> str | None:
    # Unquoted ISO timestamps come back from YAML as datetime objects.
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    return _optional_str(value)
