"""Plan catalog: pricing, feature tables, and usage limits per plan.

Four plans are offered:

* **Free** -- basic OCR and analytics, 10 receipts / 2 invoices a month.
* **Pro** -- enhanced OCR, email templates, custom branding.
* **Business** -- unlimited receipts and invoices, multi-user, full API.
* **Enterprise** -- everything unlimited with dedicated support.

The catalog is read-only and safe to share between requests.  Limits use
``-1`` for "unlimited"; features are either booleans or level strings.
"""

from __future__ import annotations

from decimal import Decimal
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.errors import PlanNotFoundError
from billing_engine.models.subscription import BillingCycle
from billing_engine.models.usage import UNLIMITED, FeatureValue

# Ordered feature levels, lowest first.  A level feature is "enabled" when
# it resolves to any level string; ``False`` means unavailable.
FEATURE_LEVELS: dict[str, tuple[str, ...]] = {
    "ocr_processing": ("basic", "enhanced", "premium"),
    "analytics": ("basic", "advanced", "premium"),
    "api_access": ("basic", "full"),
}

BOOLEAN_FEATURES: frozenset[str] = frozenset(
    {
        "email_templates",
        "multi_user",
        "priority_support",
        "custom_branding",
        "advanced_reporting",
        "integrations",
        "dedicated_support",
        "sla_guarantee",
    }
)

LIMIT_KEYS: frozenset[str] = frozenset({"receipts_per_month", "invoices_per_month", "storage_mb", "users_max"})


def is_known_feature(feature: str) -> bool:
    return feature in FEATURE_LEVELS or feature in BOOLEAN_FEATURES


class PlanDefinition(BaseModel):
    """A purchasable plan."""

    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price_monthly: Decimal = Field(..., ge=0)
    price_yearly: Decimal = Field(..., ge=0)
    features: dict[str, FeatureValue] = Field(default_factory=dict)
    limits: dict[str, int] = Field(default_factory=dict)
    trial_days: int = Field(default=0, ge=0)
    sort_order: int = 0

    def price_for(self, cycle: BillingCycle) -> Decimal:
        """Return the recurring price for *cycle*."""
        return self.price_monthly if cycle == BillingCycle.MONTHLY else self.price_yearly

    def feature(self, feature: str) -> FeatureValue:
        """Return the plan's value for *feature*; unlisted features are off."""
        return self.features.get(feature, False)

    def limit(self, limit_key: str) -> int:
        """Return the plan's limit for *limit_key*; unlisted limits are zero."""
        return self.limits.get(limit_key, 0)


class FreeTierDefaults(BaseModel):
    """Most-restrictive entitlements used when plan data cannot be read.

    Passed explicitly into the usage ledger so that tests and deployments
    can substitute their own fallback.
    """

    model_config = ConfigDict(frozen=True)

    plan_id: str = "free"
    features: dict[str, FeatureValue] = Field(default_factory=dict)
    limits: dict[str, int] = Field(default_factory=dict)

    @classmethod
    def from_plan(cls, plan: PlanDefinition) -> FreeTierDefaults:
        return cls(plan_id=plan.plan_id, features=dict(plan.features), limits=dict(plan.limits))

    def feature(self, feature: str) -> FeatureValue:
        return self.features.get(feature, False)

    def limit(self, limit_key: str) -> int:
        return self.limits.get(limit_key, 0)


_DEFAULT_PLANS: tuple[dict[str, Any], ...] = (
    {
        "plan_id": "free",
        "name": "Free",
        "price_monthly": Decimal("0.00"),
        "price_yearly": Decimal("0.00"),
        "features": {
            "ocr_processing": "basic",
            "email_templates": False,
            "analytics": "basic",
            "multi_user": False,
            "api_access": False,
            "priority_support": False,
            "custom_branding": False,
        },
        "limits": {
            "receipts_per_month": 10,
            "invoices_per_month": 2,
            "storage_mb": 100,
            "users_max": 1,
        },
        "trial_days": 0,
        "sort_order": 1,
    },
    {
        "plan_id": "pro",
        "name": "Pro",
        "price_monthly": Decimal("19.99"),
        "price_yearly": Decimal("199.99"),
        "features": {
            "ocr_processing": "enhanced",
            "email_templates": True,
            "analytics": "advanced",
            "multi_user": False,
            "api_access": "basic",
            "priority_support": True,
            "custom_branding": True,
        },
        "limits": {
            "receipts_per_month": 500,
            "invoices_per_month": 50,
            "storage_mb": 5000,
            "users_max": 1,
        },
        "trial_days": 14,
        "sort_order": 2,
    },
    {
        "plan_id": "business",
        "name": "Business",
        "price_monthly": Decimal("49.99"),
        "price_yearly": Decimal("499.99"),
        "features": {
            "ocr_processing": "premium",
            "email_templates": True,
            "analytics": "premium",
            "multi_user": True,
            "api_access": "full",
            "priority_support": True,
            "custom_branding": True,
            "advanced_reporting": True,
            "integrations": True,
        },
        "limits": {
            "receipts_per_month": UNLIMITED,
            "invoices_per_month": UNLIMITED,
            "storage_mb": 25000,
            "users_max": 10,
        },
        "trial_days": 14,
        "sort_order": 3,
    },
    {
        "plan_id": "enterprise",
        "name": "Enterprise",
        "price_monthly": Decimal("99.99"),
        "price_yearly": Decimal("999.99"),
        "features": {
            "ocr_processing": "premium",
            "email_templates": True,
            "analytics": "premium",
            "multi_user": True,
            "api_access": "full",
            "priority_support": True,
            "custom_branding": True,
            "advanced_reporting": True,
            "integrations": True,
            "dedicated_support": True,
            "sla_guarantee": True,
        },
        "limits": {
            "receipts_per_month": UNLIMITED,
            "invoices_per_month": UNLIMITED,
            "storage_mb": UNLIMITED,
            "users_max": UNLIMITED,
        },
        "trial_days": 14,
        "sort_order": 4,
    },
)


class PlanCatalog:
    """Read-only lookup from ``plan_id`` to :class:`PlanDefinition`."""

    def __init__(self, plans: list[PlanDefinition] | tuple[PlanDefinition, ...]) -> None:
        self._plans = MappingProxyType({plan.plan_id: plan for plan in plans})

    def get(self, plan_id: str) -> PlanDefinition:
        """Return the plan for *plan_id*.

        Raises
        ------
        PlanNotFoundError
            If the catalog has no such plan.
        """
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Unknown plan_id {plan_id!r}")
        return plan

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans

    def all(self) -> list[PlanDefinition]:
        """Return all plans ordered for display."""
        return sorted(self._plans.values(), key=lambda p: p.sort_order)

    def free_tier_defaults(self, plan_id: str = "free") -> FreeTierDefaults:
        """Build :class:`FreeTierDefaults` from the catalog's free plan."""
        return FreeTierDefaults.from_plan(self.get(plan_id))


def default_catalog() -> PlanCatalog:
    """Return the standard product catalog."""
    return PlanCatalog([PlanDefinition(**plan) for plan in _DEFAULT_PLANS])
