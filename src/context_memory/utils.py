"""Clock helpers shared by scoring, compression and retrieval."""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(ts: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


def age_hours(ts: datetime, now: Optional[datetime] = None) -> float:
    now = now or utc_now()
    return (ensure_aware(now) - ensure_aware(ts)).total_seconds() / 3600


def age_days(ts: datetime, now: Optional[datetime] = None) -> float:
    return age_hours(ts, now) / 24
