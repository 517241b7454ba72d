"""
shared/utils/clock.py
Time helpers. All timestamps in the system are timezone-aware UTC.
"""

from datetime import datetime, timezone
from typing import Callable, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_clock() -> Callable[[], datetime]:
    """FastAPI dependency: the time source used by the booking engine."""
    return utcnow
