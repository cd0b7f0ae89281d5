"""Timestamp helpers.

WHAT:
    All persisted timestamps are naive UTC (matching `datetime.utcnow` column
    defaults). These helpers normalize aware datetimes at the boundary.
WHY:
    SQLite drops tzinfo on read; mixing aware and naive values breaks
    comparisons in the calculator and in lease checks.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
