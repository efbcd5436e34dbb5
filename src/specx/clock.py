"""UTC timestamp helpers shared by the state and audit layers."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(moment: datetime) -> str:
    """Render an aware datetime as ISO-8601 with a trailing Z."""
    return moment.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse timestamps written by `format_timestamp` (or any ISO-8601 form)."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def hours_between(start: str, end: datetime) -> float:
    """Elapsed hours rounded to two decimals."""
    delta = end - parse_timestamp(start)
    return round(delta.total_seconds() / 3600.0, 2)


class FixedClock:
    """Manually advanced clock for deterministic callers."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> None:
        self._now = self._now + timedelta(**kwargs)
