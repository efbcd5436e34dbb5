"""Machine-readable task state keyed by `SPEC:TASK`."""

from __future__ import annotations

import json
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from filelock import FileLock

from specx.artifacts.canonical_json import write_json
from specx.errors import CorruptStateError
from specx.router.types import Priority, Task, TaskRef, TaskStatus
from specx.schemas import schema_errors

if TYPE_CHECKING:
    from pathlib import Path

STORE_SCHEMA_NAME = "state_store"
STORE_VERSION = 1

HISTORY_ASSIGNED = "assigned"
HISTORY_COMPLETED = "completed"
HISTORY_RELEASED = "released"
HISTORY_BLOCKED = "blocked"
HISTORY_READIED = "readied"


@dataclass(frozen=True)
class TaskRecord:
    """Store entry for one task."""

    spec_id: str
    task_id: str
    status: TaskStatus
    priority: Priority | None = None
    assignee: str | None = None
    started_at: str | None = None
    confidence: float | None = None
    assigned_by: str | None = None
    completed_at: str | None = None
    notes: str | None = None
    updated_at: str | None = None

    @property
    def ref(self) -> TaskRef:
        return TaskRef(spec_id=self.spec_id, task_id=self.task_id)

    @property
    def key(self) -> str:
        return self.ref.key

    @classmethod
    def from_task(cls, task: Task) -> TaskRecord:
        return cls(
            spec_id=task.spec_id,
            task_id=task.id,
            status=task.status,
            priority=task.priority,
            assignee=task.assignee,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskRecord:
        priority = data.get("priority")
        confidence = data.get("confidence")
        return cls(
            spec_id=str(data["spec_id"]),
            task_id=str(data["task_id"]),
            status=TaskStatus(data["status"]),
            priority=Priority(priority) if priority is not None else None,
            assignee=data.get("assignee"),
            started_at=data.get("started_at"),
            confidence=float(confidence) if confidence is not None else None,
            assigned_by=data.get("assigned_by"),
            completed_at=data.get("completed_at"),
            notes=data.get("notes"),
            updated_at=data.get("updated_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "task_id": self.task_id,
            "status": self.status.value,
            "priority": self.priority.value if self.priority is not None else None,
            "assignee": self.assignee,
            "started_at": self.started_at,
            "confidence": self.confidence,
            "assigned_by": self.assigned_by,
            "completed_at": self.completed_at,
            "notes": self.notes,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Assignment:
    """A live assignment; exists only while the task is in progress."""

    spec_id: str
    task_id: str
    agent_type: str
    started_at: str | None
    confidence: float | None
    assigned_by: str | None

    @property
    def ref(self) -> TaskRef:
        return TaskRef(spec_id=self.spec_id, task_id=self.task_id)

    @classmethod
    def from_record(cls, record: TaskRecord) -> Assignment:
        if record.assignee is None:
            raise ValueError(f"record {record.key} has no assignee")
        return cls(
            spec_id=record.spec_id,
            task_id=record.task_id,
            agent_type=record.assignee,
            started_at=record.started_at,
            confidence=record.confidence,
            assigned_by=record.assigned_by,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.ref.key,
            "spec_id": self.spec_id,
            "task_id": self.task_id,
            "agent": self.agent_type,
            "started_at": self.started_at,
            "confidence": self.confidence,
            "assigned_by": self.assigned_by,
        }


@dataclass(frozen=True)
class HistoryEntry:
    action: str
    task: str
    at: str
    agent: str | None = None
    duration_hours: float | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action": self.action, "task": self.task, "at": self.at}
        if self.agent is not None:
            data["agent"] = self.agent
        if self.duration_hours is not None:
            data["duration_hours"] = self.duration_hours
        if self.notes is not None:
            data["notes"] = self.notes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            action=str(data["action"]),
            task=str(data["task"]),
            at=str(data["at"]),
            agent=data.get("agent"),
            duration_hours=data.get("duration_hours"),
            notes=data.get("notes"),
        )


class StateStore:
    """JSON task store; each write is a locked read-modify-write of named keys."""

    def __init__(self, path: Path, *, lock_timeout: float = 5.0) -> None:
        self.path = path
        self._file_lock = FileLock(str(path.with_name(path.name + ".lock")), timeout=lock_timeout)

    def _read_payload(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"version": STORE_VERSION, "tasks": {}, "history": []}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise CorruptStateError(f"{self.path}: invalid JSON: {exc}") from exc
        errors = schema_errors(payload, STORE_SCHEMA_NAME)
        if errors:
            raise CorruptStateError(
                f"{self.path}: state store failed schema validation",
                detail={"errors": errors},
            )
        return payload

    def _write_payload(self, payload: dict[str, Any]) -> None:
        write_json(self.path, payload, indent=2)

    def records(self) -> dict[str, TaskRecord]:
        with self._file_lock:
            payload = self._read_payload()
        return {key: TaskRecord.from_dict(value) for key, value in sorted(payload["tasks"].items())}

    def get(self, ref: TaskRef) -> TaskRecord | None:
        return self.records().get(ref.key)

    def history(self, *, task: str | None = None, agent: str | None = None) -> list[HistoryEntry]:
        with self._file_lock:
            payload = self._read_payload()
        entries = [HistoryEntry.from_dict(item) for item in payload["history"]]
        if task is not None:
            entries = [item for item in entries if item.task == task]
        if agent is not None:
            entries = [item for item in entries if item.agent == agent]
        return entries

    def apply(self, upserts: dict[str, TaskRecord], history: list[HistoryEntry] | None = None) -> None:
        """Replace the named records and append history, leaving other keys untouched."""
        with self._file_lock:
            payload = self._read_payload()
            for key, record in upserts.items():
                if key != record.key:
                    raise ValueError(f"record key mismatch: {key} != {record.key}")
                payload["tasks"][key] = record.to_dict()
            payload["history"].extend(item.to_dict() for item in history or [])
            self._write_payload(payload)

    def restore(self, before: dict[str, TaskRecord | None], appended: list[HistoryEntry] | None = None) -> None:
        """Undo an `apply`: put back prior records and drop the history it appended."""
        with self._file_lock:
            payload = self._read_payload()
            for key, record in before.items():
                if record is None:
                    payload["tasks"].pop(key, None)
                else:
                    payload["tasks"][key] = record.to_dict()
            for entry in reversed(appended or []):
                target = entry.to_dict()
                for index in range(len(payload["history"]) - 1, -1, -1):
                    if payload["history"][index] == target:
                        del payload["history"][index]
                        break
            self._write_payload(payload)

    def assignments(self, agent: str | None = None) -> list[Assignment]:
        live = [
            Assignment.from_record(record)
            for record in self.records().values()
            if record.status is TaskStatus.IN_PROGRESS and record.assignee is not None
        ]
        if agent is not None:
            live = [item for item in live if item.agent_type == agent]
        return live

    def agent_workloads(self) -> dict[str, int]:
        counts = Counter(item.agent_type for item in self.assignments())
        return dict(sorted(counts.items()))
