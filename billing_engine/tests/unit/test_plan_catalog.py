"""Unit tests for the plan catalog and free-tier defaults."""

from __future__ import annotations

from decimal import Decimal

import pytest
from billing_engine.errors import BillingNotFoundError, PlanNotFoundError
from billing_engine.models.subscription import BillingCycle
from billing_engine.models.usage import UNLIMITED, UsageType
from billing_engine.plans.catalog import (
    FreeTierDefaults,
    PlanCatalog,
    PlanDefinition,
    default_catalog,
    is_known_feature,
)


@pytest.fixture
def catalog() -> PlanCatalog:
    return default_catalog()


class TestDefaultCatalog:
    """The standard four-plan product catalog."""

    def test_plans_in_display_order(self, catalog: PlanCatalog) -> None:
        assert [plan.plan_id for plan in catalog.all()] == ["free", "pro", "business", "enterprise"]

    def test_prices(self, catalog: PlanCatalog) -> None:
        pro = catalog.get("pro")
        assert pro.price_for(BillingCycle.MONTHLY) == Decimal("19.99")
        assert pro.price_for(BillingCycle.YEARLY) == Decimal("199.99")
        assert catalog.get("free").price_for(BillingCycle.MONTHLY) == Decimal("0.00")

    def test_free_limits(self, catalog: PlanCatalog) -> None:
        free = catalog.get("free")
        assert free.limit(UsageType.RECEIPTS.limit_key) == 10
        assert free.limit(UsageType.INVOICES.limit_key) == 2
        assert free.limit(UsageType.STORAGE_MB.limit_key) == 100
        assert free.limit(UsageType.USERS.limit_key) == 1

    def test_business_receipts_unlimited(self, catalog: PlanCatalog) -> None:
        assert catalog.get("business").limit("receipts_per_month") == UNLIMITED

    def test_feature_levels(self, catalog: PlanCatalog) -> None:
        assert catalog.get("free").feature("ocr_processing") == "basic"
        assert catalog.get("pro").feature("ocr_processing") == "enhanced"
        assert catalog.get("free").feature("api_access") is False

    def test_unlisted_feature_is_off(self, catalog: PlanCatalog) -> None:
        assert catalog.get("free").feature("sla_guarantee") is False

    def test_unlisted_limit_is_zero(self) -> None:
        plan = PlanDefinition(plan_id="tiny", name="Tiny", price_monthly=Decimal("1"), price_yearly=Decimal("10"))
        assert plan.limit("receipts_per_month") == 0

    def test_paid_plans_have_trials(self, catalog: PlanCatalog) -> None:
        assert catalog.get("pro").trial_days == 14
        assert catalog.get("free").trial_days == 0

    def test_unknown_plan(self, catalog: PlanCatalog) -> None:
        with pytest.raises(PlanNotFoundError):
            catalog.get("platinum")

    def test_unknown_plan_is_not_found_error(self, catalog: PlanCatalog) -> None:
        with pytest.raises(BillingNotFoundError):
            catalog.get("platinum")

    def test_membership(self, catalog: PlanCatalog) -> None:
        assert "pro" in catalog
        assert "platinum" not in catalog

    def test_plans_are_frozen(self, catalog: PlanCatalog) -> None:
        with pytest.raises(Exception):
            catalog.get("pro").name = "Changed"  # type: ignore[misc]


class TestFreeTierDefaults:
    def test_built_from_free_plan(self, catalog: PlanCatalog) -> None:
        defaults = catalog.free_tier_defaults()
        assert defaults.plan_id == "free"
        assert defaults.limit("receipts_per_month") == 10
        assert defaults.feature("ocr_processing") == "basic"

    def test_empty_defaults_deny_everything(self) -> None:
        defaults = FreeTierDefaults()
        assert defaults.limit("receipts_per_month") == 0
        assert defaults.feature("analytics") is False


def test_is_known_feature() -> None:
    assert is_known_feature("analytics")
    assert is_known_feature("multi_user")
    assert not is_known_feature("teleportation")
