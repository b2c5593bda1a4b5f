"""
core/clock.py -- Time source shared by every time-dependent component.

Lockout windows, rate-limit windows, audit timestamps and token refresh
scheduling all read "now" through a Clock callable. Production code uses
utcnow(); tests inject a controllable fake so window arithmetic can be
checked without sleeping.

All timestamps are timezone-aware UTC. Persisted values are ISO 8601 strings
(same representation as created_at / last_login columns in the stores).

Layer rule: core/ is the kernel and imports nothing from the other packages.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def from_iso(value: str | None) -> datetime | None:
    """Parse a stored ISO 8601 timestamp. Naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
