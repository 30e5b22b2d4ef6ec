"""
Formatting and normalization utilities.

Provides functions for:
- UTC timestamp handling (records store naive UTC datetimes)
- Minute-precision instant keys used for matching
- Whitespace/case normalization of free text
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """
    Current time as a naive UTC datetime.

    Returns:
        datetime without tzinfo, expressed in UTC
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to naive UTC.

    Aware datetimes are converted to UTC; naive datetimes are assumed to
    already be UTC.

    Examples:
        >>> to_utc_naive(datetime(2025, 3, 1, 13, 0, tzinfo=timezone.utc))
        datetime.datetime(2025, 3, 1, 13, 0)
    """
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def minute_key(value: Optional[datetime]) -> Optional[str]:
    """
    Render an instant truncated to the minute, in UTC.

    Examples:
        >>> minute_key(datetime(2025, 3, 1, 18, 0, 42))
        '2025-03-01T18:00'
    """
    value = to_utc_naive(value)
    if value is None:
        return None
    return value.replace(second=0, microsecond=0).strftime("%Y-%m-%dT%H:%M")


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for JSON columns (None-safe)."""
    if value is None:
        return None
    return to_utc_naive(value).isoformat()


def parse_isoformat(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 string produced by isoformat() (None-safe)."""
    if not value:
        return None
    return to_utc_naive(datetime.fromisoformat(value.replace("Z", "+00:00")))


def collapse_whitespace(value: Optional[str]) -> str:
    """
    Lower-case a string and collapse internal whitespace runs.

    Examples:
        >>> collapse_whitespace("  Board   Meeting ")
        'board meeting'
    """
    if not value:
        return ""
    return " ".join(value.split()).lower()
