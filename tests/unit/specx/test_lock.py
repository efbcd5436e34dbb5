from __future__ import annotations

import os
import time
from typing import TYPE_CHECKING

import pytest

from specx.audit.log import EVENT_LOCK_STOLEN, AuditLog, InMemoryAuditSink
from specx.errors import ErrorKind, LockTimeoutError
from specx.state.lock import SpecLockManager

if TYPE_CHECKING:
    from pathlib import Path


def test_hold_is_reentrant_in_one_thread(tmp_path: Path) -> None:
    locks = SpecLockManager(tmp_path / "locks", timeout=0.5)

    with locks.hold("S1"):
        with locks.hold("S1"):
            assert locks.is_held("S1")
        assert locks.is_held("S1")

    assert not locks.is_held("S1")
    assert not locks.lock_path("S1").exists()


def test_second_holder_times_out(tmp_path: Path) -> None:
    first = SpecLockManager(tmp_path / "locks", timeout=0.2, stale_after=60)
    second = SpecLockManager(tmp_path / "locks", timeout=0.2, stale_after=60)

    with first.hold("S1"):
        with pytest.raises(LockTimeoutError) as excinfo:
            with second.hold("S1"):
                pass

    assert excinfo.value.kind is ErrorKind.LOCK_TIMEOUT
    assert excinfo.value.retryable is True
    assert excinfo.value.detail["spec_id"] == "S1"


def test_locks_are_per_spec(tmp_path: Path) -> None:
    first = SpecLockManager(tmp_path / "locks", timeout=0.2)
    second = SpecLockManager(tmp_path / "locks", timeout=0.2)

    with first.hold("S1"), second.hold("S2"):
        assert first.is_held("S1")
        assert second.is_held("S2")


def test_abandoned_lock_is_stolen_and_audited(tmp_path: Path) -> None:
    audit = AuditLog(InMemoryAuditSink())
    locks = SpecLockManager(tmp_path / "locks", timeout=0.2, stale_after=5, audit=audit)
    path = locks.lock_path("S1")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("crashed writer", encoding="utf-8")
    old = time.time() - 60
    os.utime(path, (old, old))

    with locks.hold("S1"):
        assert locks.is_held("S1")

    stolen = audit.query()
    assert [event.event_type for event in stolen] == [EVENT_LOCK_STOLEN]
    assert stolen[0].payload["spec_id"] == "S1"
    assert stolen[0].payload["age_seconds"] >= 55


def test_fresh_foreign_lock_is_respected(tmp_path: Path) -> None:
    locks = SpecLockManager(tmp_path / "locks", timeout=0.2, stale_after=60)
    path = locks.lock_path("S1")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("live writer", encoding="utf-8")

    with pytest.raises(LockTimeoutError):
        with locks.hold("S1"):
            pass

    assert path.exists()


def test_lock_file_names_are_sanitized(tmp_path: Path) -> None:
    locks = SpecLockManager(tmp_path)

    assert locks.lock_path("team/auth spec").name == "team_auth_spec.lock"


def test_stale_window_must_exceed_timeout(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="stale_after must exceed timeout"):
        SpecLockManager(tmp_path / "locks", timeout=5.0, stale_after=5.0)


def test_holder_waiting_on_other_specs_is_not_stolen(tmp_path: Path) -> None:
    holder = SpecLockManager(tmp_path / "locks", timeout=0.3, stale_after=1.0)
    intruder_audit = AuditLog(InMemoryAuditSink())
    intruder = SpecLockManager(tmp_path / "locks", timeout=0.2, stale_after=1.0, audit=intruder_audit)
    busy = holder.lock_path("S2")
    busy.parent.mkdir(parents=True, exist_ok=True)
    busy.write_text("live writer", encoding="utf-8")

    with holder.hold("S1"):
        # Each failed wait on S2 is shorter than the stale window, but together they exceed it.
        for _ in range(4):
            os.utime(busy)
            with pytest.raises(LockTimeoutError):
                with holder.hold("S2"):
                    pass

        with pytest.raises(LockTimeoutError):
            with intruder.hold("S1"):
                pass
        assert holder.is_held("S1")
        assert holder.lock_path("S1").exists()

    assert intruder_audit.query() == []
    assert not holder.lock_path("S1").exists()


def test_release_leaves_a_replaced_lock_file_in_place(tmp_path: Path) -> None:
    locks = SpecLockManager(tmp_path / "locks", timeout=0.2, stale_after=5)
    path = locks.lock_path("S1")

    with locks.hold("S1"):
        assert path.read_text(encoding="utf-8")
        path.unlink()
        path.write_text("newer writer", encoding="utf-8")

    assert not locks.is_held("S1")
    assert path.read_text(encoding="utf-8") == "newer writer"


def test_release_removes_own_lock_file(tmp_path: Path) -> None:
    locks = SpecLockManager(tmp_path / "locks", timeout=0.2, stale_after=5)

    with locks.hold("S1"):
        assert locks.lock_path("S1").exists()

    assert not locks.lock_path("S1").exists()
