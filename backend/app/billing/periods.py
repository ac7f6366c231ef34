"""Billing period arithmetic: period ends, days remaining, refund windows.

Pure functions only. Nothing here is stored; callers recompute on read.
"""

import math
from datetime import datetime, timedelta

from dateutil.relativedelta import relativedelta

from app.billing.states import PlanInterval

LIFETIME_YEARS = 100

_ONE_DAY = timedelta(days=1)


def period_end(interval: str, start: datetime) -> datetime:
    """Return the end of a billing period that begins at ``start``.

    Month and year steps are calendar steps clamped to the last valid day,
    so Jan 31 + 1 month is the last day of February.
    """
    match PlanInterval(interval):
        case PlanInterval.MONTH:
            return start + relativedelta(months=1)
        case PlanInterval.YEAR:
            return start + relativedelta(years=1)
        case PlanInterval.LIFETIME:
            return start + relativedelta(years=LIFETIME_YEARS)


def next_period(interval: str, previous_end: datetime) -> tuple[datetime, datetime]:
    """Roll a period forward: the new period starts where the old one ended."""
    return previous_end, period_end(interval, previous_end)


def extend_period(end: datetime, days: int) -> datetime:
    return end + timedelta(days=days)


def days_remaining(current_period_end: datetime, now: datetime) -> int:
    """Whole days left in the period, rounded up, never negative."""
    seconds = (current_period_end - now).total_seconds()
    return max(0, math.ceil(seconds / _ONE_DAY.total_seconds()))


def days_since(instant: datetime, now: datetime) -> int:
    """Whole days elapsed since ``instant`` (floor)."""
    return max(0, (now - instant).days)


def within_refund_window(completed_at: datetime, now: datetime, refund_window_days: int) -> bool:
    return now - completed_at <= timedelta(days=refund_window_days)


def days_until_refund_expires(completed_at: datetime, now: datetime, refund_window_days: int) -> int:
    """Whole days left to request a refund.

    Never 0 while a refund can still be requested: the last day of the
    window, boundary instant included, counts as 1.
    """
    if not within_refund_window(completed_at, now, refund_window_days):
        return 0
    return max(1, refund_window_days - days_since(completed_at, now))
