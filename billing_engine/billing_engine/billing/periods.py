"""Billing-period arithmetic."""

from __future__ import annotations

import calendar
from datetime import UTC, datetime, timedelta

from billing_engine.models.subscription import BillingCycle


def add_months(moment: datetime, months: int) -> datetime:
    """Shift *moment* by whole calendar months, clamping to the month's last day.

    ``Jan 31 + 1 month`` is ``Feb 28`` (or ``Feb 29`` in a leap year).
    """
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_billing_period(start: datetime, cycle: BillingCycle) -> datetime:
    """Return the end of a billing period that begins at *start*."""
    if cycle == BillingCycle.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


def trial_end_from(start: datetime, trial_days: int) -> datetime:
    return start + timedelta(days=trial_days)


def usage_period_start(now: datetime) -> datetime:
    """Return the start of the UTC calendar month containing *now*.

    Usage counters reset on this boundary.
    """
    now_utc = now.astimezone(UTC)
    return now_utc.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_usage_period_start(now: datetime) -> datetime:
    return add_months(usage_period_start(now), 1)
