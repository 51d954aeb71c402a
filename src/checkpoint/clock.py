"""UTC time helpers.

Every timestamp in the service is timezone-aware UTC. Callers that need a
deterministic clock (scheduled tasks, tests) pass ``now`` explicitly.
"""

from __future__ import annotations

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Server-side 'now' in UTC (aware)."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC. Naive values are interpreted as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes elapsed from ``start`` to ``end`` (floored, never negative)."""
    seconds = (as_utc(end) - as_utc(start)).total_seconds()  # type: ignore[operator]
    return max(0, int(seconds // 60))


def to_utc_z(value: datetime | None) -> str | None:
    """Serialize to ISO-8601 with trailing 'Z'."""
    if value is None:
        return None
    dt = as_utc(value).replace(microsecond=0)  # type: ignore[union-attr]
    return dt.isoformat().replace("+00:00", "Z")
