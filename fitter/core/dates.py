from datetime import date, datetime, timedelta, timezone
from typing import Union

DayLike = Union[date, datetime]


def utc_now() -> datetime:
    # Columns are naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def day_bucket(day: DayLike) -> datetime:
    if isinstance(day, datetime):
        if day.tzinfo is not None:
            day = day.astimezone(timezone.utc).replace(tzinfo=None)
        return datetime(day.year, day.month, day.day)
    return datetime(day.year, day.month, day.day)


def day_bounds(day: DayLike) -> tuple[datetime, datetime]:
    start = day_bucket(day)
    return start, start + timedelta(days=1)


def parse_day(value: str) -> date:
    return date.fromisoformat(value.strip())
