from datetime import date, datetime, timedelta, timezone
from typing import Union

from dateutil.relativedelta import relativedelta

DateLike = Union[date, datetime, str]

INTERVALS = ("daily", "weekly", "monthly")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form pymongo hands back by default."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def to_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    d = to_date(value)
    return datetime(d.year, d.month, d.day)


def day_key(value: DateLike) -> str:
    """Cashbox and daily-sales rows are keyed by ISO date."""
    return to_date(value).isoformat()


def days_overdue(due: DateLike, now: DateLike) -> int:
    """Whole calendar days elapsed since due. Zero or negative means not yet due."""
    return (to_date(now) - to_date(due)).days


def step_date(start: DateLike, interval: str, index: int) -> datetime:
    """Due date of the index-th installment (0-based) counted from start."""
    base = to_datetime(start)
    if interval == "monthly":
        return base + relativedelta(months=index)
    if interval == "weekly":
        return base + timedelta(days=7 * index)
    if interval == "daily":
        return base + timedelta(days=index)
    raise ValueError(f"Unknown interval: {interval}")


def add_days(value: DateLike, days: int) -> datetime:
    return to_datetime(value) + timedelta(days=days)
