"""Epoch timestamp helpers."""

from datetime import datetime, timezone


def now_ts() -> int:
    """Return the current UTC time as integer epoch seconds."""
    return int(datetime.now(timezone.utc).timestamp())


def to_timestamp(dt: datetime | int | None) -> int:
    """Return epoch seconds for a datetime. Naive datetimes are treated as UTC."""
    if dt is None:
        return 0
    if isinstance(dt, int):
        return dt
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def within_window(now: int, start: int | None, end: int | None) -> bool:
    """Check start <= now <= end where a missing or zero bound is unbounded."""
    if start and now < start:
        return False
    if end and now > end:
        return False
    return True
