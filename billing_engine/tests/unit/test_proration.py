"""Unit tests for billing_engine.billing.proration."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from billing_engine.billing.proration import ProrationResult, prorate, quantize_money, surplus_credit
from billing_engine.errors import BillingValidationError, ProrationError

_START = datetime(2026, 1, 1, tzinfo=UTC)
_END = datetime(2026, 1, 31, tzinfo=UTC)  # 30 days


class TestProrate:
    """Credit and charge for mid-period plan changes."""

    def test_upgrade_on_day_ten(self) -> None:
        result = prorate(Decimal("20.00"), Decimal("40.00"), _START, _END, datetime(2026, 1, 11, tzinfo=UTC))

        assert result.total_days == 30
        assert result.unused_days == 20
        assert result.credit == Decimal("13.33")
        assert result.immediate_charge == Decimal("13.34")
        assert result.next_billing_amount == Decimal("40.00")

    def test_credit_plus_charge_equals_new_cost_of_remaining_days(self) -> None:
        result = prorate(Decimal("20.00"), Decimal("40.00"), _START, _END, datetime(2026, 1, 11, tzinfo=UTC))
        assert result.credit + result.immediate_charge == Decimal("26.67")

    def test_downgrade_has_no_immediate_charge(self) -> None:
        result = prorate(Decimal("40.00"), Decimal("20.00"), _START, _END, datetime(2026, 1, 11, tzinfo=UTC))

        assert result.credit == Decimal("26.67")
        assert result.immediate_charge == Decimal("0.00")
        assert result.next_billing_amount == Decimal("20.00")

    def test_change_at_period_start_credits_everything(self) -> None:
        result = prorate(Decimal("30.00"), Decimal("60.00"), _START, _END, _START)

        assert result.unused_days == 30
        assert result.credit == Decimal("30.00")
        assert result.immediate_charge == Decimal("30.00")

    def test_change_at_period_end_credits_nothing(self) -> None:
        result = prorate(Decimal("30.00"), Decimal("60.00"), _START, _END, _END)

        assert result.unused_days == 0
        assert result.credit == Decimal("0.00")
        assert result.immediate_charge == Decimal("0.00")

    def test_partial_day_counts_as_whole_day(self) -> None:
        now = datetime(2026, 1, 11, 12, 0, tzinfo=UTC)
        result = prorate(Decimal("30.00"), Decimal("30.00"), _START, _END, now)
        # 19.5 days remain, billed as 20.
        assert result.unused_days == 20

    def test_now_before_period_clamps_to_total(self) -> None:
        result = prorate(Decimal("30.00"), Decimal("30.00"), _START, _END, _START - timedelta(days=5))
        assert result.unused_days == 30

    def test_now_after_period_clamps_to_zero(self) -> None:
        result = prorate(Decimal("30.00"), Decimal("30.00"), _START, _END, _END + timedelta(days=2))
        assert result.unused_days == 0
        assert result.credit == Decimal("0.00")

    def test_zero_length_period_rejected(self) -> None:
        with pytest.raises(ProrationError, match="zero length"):
            prorate(Decimal("10.00"), Decimal("20.00"), _START, _START, _START)

    def test_inverted_period_rejected(self) -> None:
        with pytest.raises(ProrationError):
            prorate(Decimal("10.00"), Decimal("20.00"), _END, _START, _START)

    def test_negative_amount_rejected(self) -> None:
        with pytest.raises(ProrationError, match="non-negative"):
            prorate(Decimal("-1.00"), Decimal("20.00"), _START, _END, _START)

    def test_proration_error_is_a_validation_error(self) -> None:
        with pytest.raises(BillingValidationError):
            prorate(Decimal("10.00"), Decimal("-20.00"), _START, _END, _START)

    def test_zero_priced_plans(self) -> None:
        result = prorate(Decimal("0"), Decimal("0"), _START, _END, datetime(2026, 1, 11, tzinfo=UTC))
        assert result.credit == Decimal("0.00")
        assert result.immediate_charge == Decimal("0.00")


class TestSurplusCredit:
    """Leftover credit on downgrades."""

    def test_downgrade_leaves_surplus(self) -> None:
        result = prorate(Decimal("40.00"), Decimal("20.00"), _START, _END, datetime(2026, 1, 11, tzinfo=UTC))
        # 26.67 credit - 13.33 new cost for the same 20 days.
        assert surplus_credit(result, Decimal("20.00")) == Decimal("13.34")

    def test_upgrade_leaves_no_surplus(self) -> None:
        result = prorate(Decimal("20.00"), Decimal("40.00"), _START, _END, datetime(2026, 1, 11, tzinfo=UTC))
        assert surplus_credit(result, Decimal("40.00")) == Decimal("0")

    def test_surplus_from_handbuilt_result(self) -> None:
        result = ProrationResult(
            unused_days=10,
            total_days=10,
            credit=Decimal("50.00"),
            immediate_charge=Decimal("0.00"),
            next_billing_amount=Decimal("10.00"),
        )
        assert surplus_credit(result, Decimal("10.00")) == Decimal("40.00")


class TestQuantizeMoney:
    def test_rounds_half_up(self) -> None:
        assert quantize_money(Decimal("1.005")) == Decimal("1.01")
        assert quantize_money(Decimal("1.004")) == Decimal("1.00")

    def test_keeps_two_places(self) -> None:
        assert str(quantize_money(Decimal("7"))) == "7.00"
