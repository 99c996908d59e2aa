"""
Timezone-aware datetime utilities.

All datetime operations should use these helpers to ensure consistent
timezone handling across the codebase.
"""
from datetime import datetime, timezone, timedelta
from typing import Optional, Union


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    Use this instead of datetime.utcnow() which returns naive datetime.
    """
    return datetime.now(timezone.utc)


def parse_db_timestamp(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Parse timestamp from database, ensuring timezone-aware UTC.

    Handles:
    - ISO format strings with Z suffix
    - ISO format strings with +00:00 offset
    - Naive datetimes (assumed UTC)
    - Already timezone-aware datetimes

    Returns:
        Timezone-aware datetime in UTC, or None if input is None/empty
    """
    if value is None:
        return None

    if isinstance(value, str):
        if not value:
            return None
        # Handle Z suffix (common in PostgreSQL/Supabase)
        value = value.replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return None
    elif isinstance(value, datetime):
        dt = value
    else:
        return None

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt


def is_past(timestamp: Optional[Union[str, datetime]], now: Optional[datetime] = None) -> bool:
    """
    Check whether an absolute deadline has passed.

    A missing timestamp means "no deadline" and is never past.
    """
    dt = parse_db_timestamp(timestamp)
    if dt is None:
        return False
    return (now or utc_now()) > dt


def seconds_since(timestamp: Optional[Union[str, datetime]]) -> Optional[float]:
    """
    Get seconds elapsed since timestamp.

    Returns:
        Seconds since timestamp, or None if timestamp is invalid
    """
    if timestamp is None:
        return None

    dt = parse_db_timestamp(timestamp)
    if dt is None:
        return None

    return (utc_now() - dt).total_seconds()


def days_from_now(days: int) -> datetime:
    """Deadline `days` days from now (UTC)."""
    return utc_now() + timedelta(days=days)
