"""Allowed task status transitions."""

from __future__ import annotations

from specx.errors import InvalidTransitionError
from specx.router.types import TaskStatus

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.BACKLOG: frozenset({TaskStatus.READY, TaskStatus.BLOCKED}),
    TaskStatus.READY: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETE, TaskStatus.READY, TaskStatus.BLOCKED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.READY}),
    TaskStatus.COMPLETE: frozenset(),
}


def is_allowed(current: TaskStatus, target: TaskStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: TaskStatus, target: TaskStatus, *, task: str) -> None:
    if is_allowed(current, target):
        return
    allowed = sorted(item.value for item in ALLOWED_TRANSITIONS[current])
    raise InvalidTransitionError(
        f"Task `{task}` cannot move from {current.value} to {target.value}",
        detail={
            "task": task,
            "from": current.value,
            "to": target.value,
            "allowed": allowed,
        },
    )
