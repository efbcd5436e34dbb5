"""Engine error taxonomy.

Every failure the engine can report carries an `ErrorKind` so automated
callers branch on the kind instead of parsing messages.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    VALIDATION_BLOCKED = "validation_blocked"
    INVALID_TRANSITION = "invalid_transition"
    STATE_INCONSISTENCY = "state_inconsistency"
    SYNC_FAILURE = "sync_failure"
    LOCK_TIMEOUT = "lock_timeout"
    INVALID_REQUEST = "invalid_request"


RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.VALIDATION_BLOCKED, ErrorKind.LOCK_TIMEOUT}
)


@dataclass(frozen=True, slots=True)
class Issue:
    """A single validation finding with an actionable hint."""

    code: str
    message: str
    hint: str | None = None

    def __post_init__(self) -> None:
        if not self.code:
            raise ValueError("code must be provided")
        if not self.message:
            raise ValueError("message must be provided")

    def to_dict(self) -> dict[str, str | None]:
        data: dict[str, str | None] = {"code": self.code, "message": self.message}
        if self.hint is not None:
            data["hint"] = self.hint
        return data

    def __str__(self) -> str:
        return self.message


class EngineError(RuntimeError):
    """Base class for structured engine failures."""

    kind: ErrorKind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, *, detail: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: dict[str, Any] = dict(detail or {})

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "detail": self.detail,
        }


class NotFoundError(EngineError):
    kind = ErrorKind.NOT_FOUND


class InvalidRequestError(EngineError):
    kind = ErrorKind.INVALID_REQUEST


class InvalidTransitionError(EngineError):
    kind = ErrorKind.INVALID_TRANSITION


class StateInconsistencyError(EngineError):
    """The two persisted views disagreed before any write."""

    kind = ErrorKind.STATE_INCONSISTENCY


class CorruptStateError(StateInconsistencyError):
    """A persisted view could not be parsed or failed its schema."""


class LockTimeoutError(EngineError):
    kind = ErrorKind.LOCK_TIMEOUT


class ValidationBlockedError(EngineError):
    kind = ErrorKind.VALIDATION_BLOCKED

    def __init__(self, message: str, *, violations: tuple[Issue, ...]) -> None:
        super().__init__(message, detail={"violations": [item.to_dict() for item in violations]})
        self.violations = violations


class SyncFailureError(EngineError):
    """The two views disagreed after a write; rollback was attempted."""

    kind = ErrorKind.SYNC_FAILURE

    def __init__(
        self,
        message: str,
        *,
        rolled_back: bool,
        mismatches: list[str] | None = None,
        rollback_error: str | None = None,
    ) -> None:
        detail: dict[str, Any] = {
            "rolled_back": rolled_back,
            "mismatches": list(mismatches or []),
            "requires_manual_intervention": not rolled_back,
        }
        if rollback_error is not None:
            detail["rollback_error"] = rollback_error
        super().__init__(message, detail=detail)
        self.rolled_back = rolled_back
        self.mismatches = list(mismatches or [])


CONFIG_REASON_PARSE_ERROR = "CONFIG_PARSE_ERROR"
CONFIG_REASON_SCHEMA_INVALID = "CONFIG_SCHEMA_INVALID"
AGENTS_REASON_MISSING = "AGENTS_MISSING"
AGENTS_REASON_PARSE_ERROR = "AGENTS_PARSE_ERROR"
AGENTS_REASON_SCHEMA_INVALID = "AGENTS_SCHEMA_INVALID"


class ConfigError(ValueError):
    """Configuration or agent registry validation error."""

    reason_code: str

    def __init__(self, message: str, reason_code: str = CONFIG_REASON_SCHEMA_INVALID) -> None:
        super().__init__(message)
        self.reason_code = reason_code
