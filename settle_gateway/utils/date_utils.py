"""Date and time helpers"""

from datetime import date, datetime, timedelta, timezone
from typing import List


def utcnow() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse processor timestamps like 2024-05-01T10:00:00.000-04:00"""
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def reminder_dates(due_date: date, days_before: List[int]) -> List[date]:
    """Dates on which a reminder is due ahead of due_date"""
    return sorted(due_date - timedelta(days=d) for d in days_before)
