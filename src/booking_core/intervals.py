from __future__ import annotations

from datetime import UTC, datetime


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap test: [a) and [b) intersect unless one ends where the other begins."""
    return start_a < end_b and start_b < end_a


def as_utc(dt: datetime) -> datetime:
    # naive datetimes are taken to be UTC already
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
