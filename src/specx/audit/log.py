"""Append-only audit log with pluggable sinks."""

from __future__ import annotations

import copy
import json
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from filelock import FileLock

from specx.artifacts.canonical_json import canonical_dumps
from specx.clock import format_timestamp, utc_now
from specx.errors import CorruptStateError

if TYPE_CHECKING:
    from pathlib import Path

    from specx.clock import Clock

logger = logging.getLogger(__name__)

EVENT_RECOMMENDATION = "route.recommended"
EVENT_VALIDATION = "assignment.validated"
EVENT_TRANSITION = "task.transition"
EVENT_TRANSITION_FAILED = "task.transition_failed"
EVENT_SPEC_COMPLETED = "spec.completed"
EVENT_LOCK_STOLEN = "lock.stolen"
EVENT_CASCADE = "handoff.cascade"
EVENT_HANDOFF_ERROR = "handoff.error"
EVENT_PERFORMANCE_WARNING = "performance.warning"
EVENT_STORE_SYNCED = "state.synced"
EVENT_COMMAND_FAILED = "command.failed"

EVENT_TYPES: tuple[str, ...] = (
    EVENT_RECOMMENDATION,
    EVENT_VALIDATION,
    EVENT_TRANSITION,
    EVENT_TRANSITION_FAILED,
    EVENT_SPEC_COMPLETED,
    EVENT_LOCK_STOLEN,
    EVENT_CASCADE,
    EVENT_HANDOFF_ERROR,
    EVENT_PERFORMANCE_WARNING,
    EVENT_STORE_SYNCED,
    EVENT_COMMAND_FAILED,
)


@dataclass(frozen=True)
class AuditEvent:
    event_type: str
    timestamp: str
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "payload": copy.deepcopy(self.payload),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        return cls(
            event_type=str(data["event_type"]),
            timestamp=str(data["timestamp"]),
            payload=dict(data.get("payload") or {}),
        )


class AuditSink(Protocol):
    def append(self, event: AuditEvent) -> None: ...

    def events(self) -> list[AuditEvent]: ...


class InMemoryAuditSink:
    """Process-local sink, mainly for tests and dry runs."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)


class JsonlAuditSink:
    """One canonical JSON object per line, appended under a file lock."""

    def __init__(self, path: Path, *, lock_timeout: float = 5.0) -> None:
        self.path = path
        self._lock = FileLock(str(path.with_name(path.name + ".lock")), timeout=lock_timeout)

    def append(self, event: AuditEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = canonical_dumps(event.to_dict()) + "\n"
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line)

    def events(self) -> list[AuditEvent]:
        if not self.path.exists():
            return []
        events: list[AuditEvent] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(AuditEvent.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError) as exc:
                    raise CorruptStateError(f"{self.path}:{number}: unreadable audit entry: {exc}") from exc
        return events


@dataclass(frozen=True)
class AuditFilter:
    """Query narrowing; every field is optional."""

    event_types: frozenset[str] = frozenset()
    spec_id: str | None = None
    task: str | None = None
    agent: str | None = None
    since: str | None = None

    def matches(self, event: AuditEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.since is not None and event.timestamp < self.since:
            return False
        payload = event.payload
        if self.spec_id is not None and payload.get("spec_id") != self.spec_id:
            task_ref = str(payload.get("task") or "")
            if not task_ref.startswith(f"{self.spec_id}:"):
                return False
        if self.task is not None and payload.get("task") != self.task:
            return False
        if self.agent is not None and payload.get("agent") != self.agent:
            return False
        return True


class AuditLog:
    """Records engine events in insertion order. No update, no delete."""

    def __init__(self, sink: AuditSink | None = None, *, clock: Clock = utc_now) -> None:
        self.sink: AuditSink = sink if sink is not None else InMemoryAuditSink()
        self.clock = clock

    def record(self, event_type: str, payload: dict[str, Any]) -> AuditEvent:
        if not event_type:
            raise ValueError("event_type must be provided")
        event = AuditEvent(
            event_type=event_type,
            timestamp=format_timestamp(self.clock()),
            payload=copy.deepcopy(payload),
        )
        self.sink.append(event)
        logger.debug("audit %s %s", event_type, payload)
        return event

    def query(self, audit_filter: AuditFilter | None = None) -> list[AuditEvent]:
        events = self.sink.events()
        if audit_filter is None:
            return events
        return [event for event in events if audit_filter.matches(event)]

    def export(self, audit_filter: AuditFilter | None = None) -> list[dict[str, Any]]:
        return [event.to_dict() for event in self.query(audit_filter)]
