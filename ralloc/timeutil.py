"""Instant helpers.

All instants inside the engine are timezone-aware UTC. SQLite hands back
naive datetimes, which are treated as UTC.
"""

from datetime import UTC, datetime


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


def to_utc(value: datetime) -> datetime:
    """Normalise an instant to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
