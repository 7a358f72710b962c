"""Proration of mid-cycle plan changes.

Pure functions, no I/O.  All arithmetic uses :class:`~decimal.Decimal` and
results are rounded half-up to the currency minor unit only when the
:class:`ProrationResult` is built, so intermediate values never accumulate
rounding drift.

Day counts follow whole-day billing: a partially elapsed day is still
billed as a day, so both the period length and the unused remainder are
rounded up to whole days.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, Field

from billing_engine.errors import ProrationError

CENT = Decimal("0.01")
_SECONDS_PER_DAY = 86_400
_ZERO = Decimal("0")


class ProrationResult(BaseModel):
    """Credit and charge for switching plans part-way through a period."""

    unused_days: int = Field(..., ge=0, description="Whole days left in the period.")
    total_days: int = Field(..., gt=0, description="Whole days in the period.")
    credit: Decimal = Field(..., description="Value of unused time on the old plan.")
    immediate_charge: Decimal = Field(..., description="Amount due now for the new plan, net of credit.")
    next_billing_amount: Decimal = Field(..., description="Full new-plan amount billed at the next renewal.")


def quantize_money(value: Decimal) -> Decimal:
    """Round *value* to cents, half-up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _whole_days(start: datetime, end: datetime) -> int:
    seconds = (end - start).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / _SECONDS_PER_DAY)


def prorate(
    old_amount: Decimal,
    new_amount: Decimal,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> ProrationResult:
    """Compute the credit and immediate charge for a mid-period plan change.

    Parameters
    ----------
    old_amount:
        Recurring price of the current plan for the whole period.
    new_amount:
        Recurring price of the target plan for the whole period.
    period_start, period_end:
        Bounds of the current billing period.
    now:
        Moment of the change.  Values outside the period clamp the unused
        days to ``[0, total_days]``.

    Returns
    -------
    ProrationResult
        ``credit`` is the old plan's value for the unused days.
        ``immediate_charge`` is the new plan's cost for the same days minus
        the credit, floored at zero.

    Raises
    ------
    ProrationError
        If the period is zero-length (or inverted) or an amount is negative.
    """
    if old_amount < _ZERO or new_amount < _ZERO:
        raise ProrationError(f"Amounts must be non-negative (old={old_amount}, new={new_amount})")

    total_days = _whole_days(period_start, period_end)
    if total_days == 0:
        raise ProrationError(f"Billing period {period_start.isoformat()}..{period_end.isoformat()} has zero length")

    unused_days = min(_whole_days(now, period_end), total_days)

    total = Decimal(total_days)
    unused = Decimal(unused_days)
    credit = old_amount / total * unused
    new_cost_remaining = new_amount / total * unused

    # Derive the charge from the rounded figures so that credit + charge
    # always equals the rounded new-plan cost of the remaining days.
    rounded_credit = quantize_money(credit)
    rounded_remaining = quantize_money(new_cost_remaining)
    immediate_charge = max(_ZERO, rounded_remaining - rounded_credit)

    return ProrationResult(
        unused_days=unused_days,
        total_days=total_days,
        credit=rounded_credit,
        immediate_charge=quantize_money(immediate_charge),
        next_billing_amount=quantize_money(new_amount),
    )


def surplus_credit(result: ProrationResult, new_amount: Decimal) -> Decimal:
    """Return credit left over after paying for the remaining days on the new plan.

    Non-zero only for downgrades, where the old plan's unused value exceeds
    the new plan's cost for the same days.
    """
    new_cost_remaining = quantize_money(new_amount / Decimal(result.total_days) * Decimal(result.unused_days))
    return max(_ZERO, result.credit - new_cost_remaining)
