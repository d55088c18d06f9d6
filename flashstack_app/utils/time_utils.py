"""
Centralized Utilities for Time Handling in FlashStack.
Goal: Ensure consistent UTC arithmetic regardless of what the store hands back.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """
    Get the current timezone-aware UTC datetime.
    Always use this instead of datetime.utcnow() or datetime.now().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def days_between(start: Optional[datetime], end: datetime) -> float:
    """Fractional days from start to end, never negative; 0 when start is unknown."""
    if start is None:
        return 0.0
    seconds = (ensure_utc(end) - ensure_utc(start)).total_seconds()
    return max(0.0, seconds / 86400.0)
