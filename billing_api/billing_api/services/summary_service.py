"""Billing summary for the account dashboard.

Read-only aggregation of the tenant's subscription, effective
entitlements and this period's usage.
"""

from __future__ import annotations

from datetime import UTC, datetime

from billing_engine.billing.periods import next_usage_period_start, usage_period_start
from billing_engine.models.subscription import SubscriptionSnapshot
from billing_engine.models.usage import FeatureValue, UsageStatus, UsageType
from billing_engine.plans.catalog import FreeTierDefaults, PlanCatalog
from billing_engine.state.repository import SubscriptionRepository
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.usage_ledger import UsageLedger


class BillingSummary(BaseModel):
    tenant_id: str
    plan_id: str
    plan_name: str
    subscription: SubscriptionSnapshot | None = None
    usage_period_start: datetime
    usage_period_end: datetime
    usage: list[UsageStatus]
    limits: dict[str, int]
    features: dict[str, FeatureValue]


class BillingSummaryService:
    """Assemble a :class:`BillingSummary` for one tenant."""

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        catalog: PlanCatalog,
        free_tier: FreeTierDefaults,
    ) -> None:
        self._tenant_id = tenant_id
        self._catalog = catalog
        self._free_tier = free_tier
        self._subscriptions = SubscriptionRepository(session, tenant_id)
        self._ledger = UsageLedger(session, tenant_id, catalog, free_tier)

    async def summarize(self, *, now: datetime | None = None) -> BillingSummary:
        now = now or datetime.now(UTC)
        row = await self._subscriptions.get_latest()
        subscription = SubscriptionSnapshot.model_validate(row) if row is not None else None

        # The displayed plan is the one whose entitlements apply.
        plan_id = self._free_tier.plan_id
        if row is not None and row.status in ("trialing", "active") and row.plan_id in self._catalog:
            plan_id = row.plan_id
        plan_name = self._catalog.get(plan_id).name if plan_id in self._catalog else plan_id

        return BillingSummary(
            tenant_id=self._tenant_id,
            plan_id=plan_id,
            plan_name=plan_name,
            subscription=subscription,
            usage_period_start=usage_period_start(now),
            usage_period_end=next_usage_period_start(now),
            usage=[await self._ledger.check_usage(usage_type, now=now) for usage_type in UsageType],
            limits=await self._ledger.resolve_limits(now=now),
            features=await self._ledger.resolve_features(now=now),
        )
