"""Unit tests for billing-period arithmetic."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

from billing_engine.billing.periods import (
    add_billing_period,
    add_months,
    next_usage_period_start,
    trial_end_from,
    usage_period_start,
)
from billing_engine.models.subscription import BillingCycle


class TestAddMonths:
    def test_simple_month(self) -> None:
        assert add_months(datetime(2026, 1, 1, tzinfo=UTC), 1) == datetime(2026, 2, 1, tzinfo=UTC)

    def test_clamps_to_short_month(self) -> None:
        assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_clamps_to_leap_day(self) -> None:
        assert add_months(datetime(2028, 1, 31, tzinfo=UTC), 1) == datetime(2028, 2, 29, tzinfo=UTC)

    def test_crosses_year_boundary(self) -> None:
        assert add_months(datetime(2026, 12, 15, 8, 30, tzinfo=UTC), 1) == datetime(2027, 1, 15, 8, 30, tzinfo=UTC)

    def test_twelve_months(self) -> None:
        assert add_months(datetime(2026, 3, 10, tzinfo=UTC), 12) == datetime(2027, 3, 10, tzinfo=UTC)


class TestBillingPeriod:
    def test_monthly(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=UTC)
        assert add_billing_period(start, BillingCycle.MONTHLY) == datetime(2026, 2, 1, tzinfo=UTC)

    def test_yearly(self) -> None:
        start = datetime(2026, 1, 1, tzinfo=UTC)
        assert add_billing_period(start, BillingCycle.YEARLY) == datetime(2027, 1, 1, tzinfo=UTC)

    def test_trial_end(self) -> None:
        start = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)
        assert trial_end_from(start, 14) == start + timedelta(days=14)


class TestUsagePeriod:
    """Usage counters reset on UTC calendar-month boundaries."""

    def test_start_of_month(self) -> None:
        now = datetime(2026, 5, 17, 13, 45, 12, 999, tzinfo=UTC)
        assert usage_period_start(now) == datetime(2026, 5, 1, tzinfo=UTC)

    def test_uses_utc_not_local_offset(self) -> None:
        # 2026-06-01 01:00 at UTC+02:00 is still May 31 in UTC.
        now = datetime(2026, 6, 1, 1, 0, tzinfo=timezone(timedelta(hours=2)))
        assert usage_period_start(now) == datetime(2026, 5, 1, tzinfo=UTC)

    def test_next_period_start(self) -> None:
        assert next_usage_period_start(datetime(2026, 12, 31, 23, 59, tzinfo=UTC)) == datetime(2027, 1, 1, tzinfo=UTC)
