"""Timestamp helpers. All stored timestamps are ISO 8601 UTC strings."""

from __future__ import annotations

from datetime import UTC, datetime


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(UTC)


def format_iso(dt: datetime) -> str:
    """Format datetime as ISO 8601, assuming UTC for naive values."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()


def now_iso() -> str:
    """Return the current UTC time formatted for storage."""
    return format_iso(now_utc())
