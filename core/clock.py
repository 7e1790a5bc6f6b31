"""
core/clock.py -- UTC time helpers shared by every store and service.

Every component that reads the time accepts a `clock` callable defaulting to
utcnow(). Tests pass a controllable clock to drive lock expiry, TOTP steps and
grace-key expiry without sleeping.

Timestamps are persisted as ISO 8601 text. to_iso() always emits microseconds
and the +00:00 offset so that stored values compare correctly as strings --
the lockout and sweep statements rely on lexical comparison in SQL.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
