"""Completion handoff: unblock dependent tasks."""

from specx.handoff.engine import HandoffEngine, HandoffReport, HandoffStatus

__all__ = ["HandoffEngine", "HandoffReport", "HandoffStatus"]
