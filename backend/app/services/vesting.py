"""Vesting arithmetic. Pure functions over aware UTC datetimes."""

from datetime import datetime, timedelta, timezone

from app.core.constants import SECONDS_PER_DAY

ONE_DAY = timedelta(seconds=SECONDS_PER_DAY)


def as_utc(value: datetime) -> datetime:
    # Some database backends hand back naive datetimes; those are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def vesting_end(purchase_date: datetime, vesting_period_days: int) -> datetime:
    return as_utc(purchase_date) + vesting_period_days * ONE_DAY


def is_claimable(now: datetime, end: datetime) -> bool:
    return as_utc(now) >= as_utc(end)


def remaining_days(now: datetime, end: datetime) -> int:
    """Whole days left until ``end``, rounded up; 0 once claimable."""
    now, end = as_utc(now), as_utc(end)
    if now >= end:
        return 0
    return -((now - end) // ONE_DAY)
