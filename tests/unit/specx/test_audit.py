from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from specx.audit.log import (
    EVENT_TRANSITION,
    EVENT_VALIDATION,
    AuditFilter,
    AuditLog,
    InMemoryAuditSink,
    JsonlAuditSink,
)
from specx.clock import FixedClock
from specx.errors import CorruptStateError
from tests.unit.specx.spec_test_utils import FIXED_NOW

if TYPE_CHECKING:
    from pathlib import Path


def _populated(log: AuditLog, clock: FixedClock) -> None:
    log.record(EVENT_VALIDATION, {"task": "S1:T1", "spec_id": "S1", "agent": "db-agent"})
    clock.advance(minutes=1)
    log.record(EVENT_TRANSITION, {"task": "S1:T1", "spec_id": "S1", "agent": "db-agent", "to": "in_progress"})
    clock.advance(minutes=1)
    log.record(EVENT_TRANSITION, {"task": "S2:T4", "spec_id": "S2", "agent": "docs-writer", "to": "in_progress"})


def test_events_keep_insertion_order_and_timestamps() -> None:
    clock = FixedClock(FIXED_NOW)
    log = AuditLog(InMemoryAuditSink(), clock=clock)
    _populated(log, clock)

    events = log.query()

    assert [event.payload["task"] for event in events] == ["S1:T1", "S1:T1", "S2:T4"]
    assert [event.timestamp for event in events] == [
        "2026-03-02T12:00:00Z",
        "2026-03-02T12:01:00Z",
        "2026-03-02T12:02:00Z",
    ]


def test_recorded_payload_is_a_copy() -> None:
    log = AuditLog()
    payload = {"task": "S1:T1", "fields": ["status"]}

    event = log.record(EVENT_TRANSITION, payload)
    payload["fields"].append("assignee")

    assert event.payload["fields"] == ["status"]


def test_filters_narrow_by_type_task_agent_spec_and_time() -> None:
    clock = FixedClock(FIXED_NOW)
    log = AuditLog(clock=clock)
    _populated(log, clock)

    assert len(log.query(AuditFilter(event_types=frozenset({EVENT_TRANSITION})))) == 2
    assert len(log.query(AuditFilter(task="S1:T1"))) == 2
    assert len(log.query(AuditFilter(agent="docs-writer"))) == 1
    assert len(log.query(AuditFilter(spec_id="S2"))) == 1
    assert len(log.query(AuditFilter(since="2026-03-02T12:01:00Z"))) == 2


def test_empty_event_type_is_rejected() -> None:
    with pytest.raises(ValueError):
        AuditLog().record("", {})


def test_jsonl_sink_round_trips_and_appends(tmp_path: Path) -> None:
    path = tmp_path / "state" / "audit.jsonl"
    clock = FixedClock(FIXED_NOW)
    first = AuditLog(JsonlAuditSink(path), clock=clock)
    _populated(first, clock)

    second = AuditLog(JsonlAuditSink(path), clock=clock)
    second.record(EVENT_VALIDATION, {"task": "S3:T1"})

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 4
    assert json.loads(lines[0])["event_type"] == EVENT_VALIDATION
    exported = second.export(AuditFilter(task="S3:T1"))
    assert exported == [
        {"event_type": EVENT_VALIDATION, "timestamp": "2026-03-02T12:02:00Z", "payload": {"task": "S3:T1"}}
    ]


def test_jsonl_sink_reports_corrupt_lines(tmp_path: Path) -> None:
    path = tmp_path / "audit.jsonl"
    path.write_text('{"event_type": "task.transition", "timestamp": "x", "payload": {}}\nnot json\n', encoding="utf-8")

    with pytest.raises(CorruptStateError, match=":2:"):
        JsonlAuditSink(path).events()
