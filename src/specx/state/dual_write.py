"""Two-phase write of both persisted views with verification and rollback."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from specx.errors import SyncFailureError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WritePhase:
    """One view's write and the restore that undoes it."""

    name: str
    apply: Callable[[], None]
    restore: Callable[[], None]


def commit_dual_write(
    primary: WritePhase,
    secondary: WritePhase,
    verify: Callable[[], list[str]],
    *,
    label: str,
) -> None:
    """Write `primary` then `secondary`, re-read both, roll back on any failure.

    Raises SyncFailureError when a write fails or `verify` reports mismatches.
    `rolled_back` on the error tells whether both views were restored.
    """
    applied: list[WritePhase] = []
    mismatches: list[str] = []
    failure: Exception | None = None
    try:
        primary.apply()
        applied.append(primary)
        secondary.apply()
        applied.append(secondary)
        mismatches = verify()
    except Exception as exc:
        failure = exc
        mismatches = [f"{_phase_name(applied, primary, secondary)} write failed: {exc}"]

    if failure is None and not mismatches:
        return

    logger.error("Dual write for %s failed: %s", label, "; ".join(mismatches))
    # Restore both views regardless of which write failed.
    rollback_errors: list[str] = []
    for phase in (secondary, primary):
        try:
            phase.restore()
        except Exception as exc:
            rollback_errors.append(f"{phase.name}: {exc}")

    if rollback_errors:
        logger.critical(
            "Rollback for %s failed; manual intervention required: %s",
            label,
            "; ".join(rollback_errors),
        )
        raise SyncFailureError(
            f"State views for {label} diverged and rollback failed; manual intervention required",
            rolled_back=False,
            mismatches=mismatches,
            rollback_error="; ".join(rollback_errors),
        ) from failure

    raise SyncFailureError(
        f"State views for {label} diverged; both views were restored",
        rolled_back=True,
        mismatches=mismatches,
    ) from failure


def _phase_name(applied: list[WritePhase], primary: WritePhase, secondary: WritePhase) -> str:
    if not applied:
        return primary.name
    if len(applied) == 1:
        return secondary.name
    return "verification"
