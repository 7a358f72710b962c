"""Pure billing arithmetic: proration and period boundaries."""

from billing_engine.billing.periods import add_billing_period, usage_period_start
from billing_engine.billing.proration import ProrationResult, prorate, quantize_money

__all__ = [
    "ProrationResult",
    "add_billing_period",
    "prorate",
    "quantize_money",
    "usage_period_start",
]
