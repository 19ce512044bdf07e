"""Time utilities."""
from datetime import UTC, datetime, timezone


def utcnow() -> datetime:
    """Return current UTC time with timezone awareness."""

    return datetime.now(tz=UTC)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes for ``DateTime(timezone=True)`` columns;
    those are stored in UTC so they only need the tzinfo re-attached.
    """

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_utc(value: str) -> datetime:
    """Parse an ISO 8601 string and normalize it to UTC."""

    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ensure_utc(dt)


__all__ = ["utcnow", "ensure_utc", "parse_iso_utc"]
