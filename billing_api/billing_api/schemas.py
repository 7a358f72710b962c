"""Shared Pydantic request and response models for API endpoints.

Routers import from here to avoid duplication.  Engine read models
(:class:`SubscriptionSnapshot`, :class:`UsageStatus`, ...) are returned
directly where their shape is already what the API exposes.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from billing_engine.models.subscription import BillingCycle, CancelMode
from billing_engine.models.usage import FeatureValue
from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Usage schemas
# ---------------------------------------------------------------------------


class UsageAmountRequest(BaseModel):
    """Body for usage check and increment calls."""

    amount: int = Field(default=1, ge=1, description="Units to check or consume.")


class UsageIncrementResponse(BaseModel):
    usage_type: str
    current: int


# ---------------------------------------------------------------------------
# Feature schemas
# ---------------------------------------------------------------------------


class FeatureResponse(BaseModel):
    """Effective value of one feature for the tenant."""

    feature: str
    value: FeatureValue
    enabled: bool


class FeatureOverrideRequest(BaseModel):
    """Body for ``PUT /features/{feature_key}/override``."""

    value: bool | int | str = Field(
        ...,
        description="true/false, a feature level, or an integer limit (-1 for unlimited).",
    )
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=1000)


class FeatureOverrideResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    feature_key: str
    override_value: Any
    expires_at: datetime | None = None
    reason: str | None = None
    created_by: str | None = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Subscription schemas
# ---------------------------------------------------------------------------


class CreateSubscriptionRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    trial_days: int | None = Field(default=None, ge=0, le=365)
    provider: str | None = None
    provider_customer_id: str | None = None
    provider_subscription_id: str | None = None


class ChangePlanRequest(BaseModel):
    plan_id: str


class CancelRequest(BaseModel):
    mode: CancelMode = CancelMode.PERIOD_END
    reason: str | None = Field(default=None, max_length=1000)


class ProrationPreviewRequest(BaseModel):
    plan_id: str


class ProrationPreviewResponse(BaseModel):
    """Quote for a plan change at the time of the request."""

    current_plan_id: str
    new_plan_id: str
    unused_days: int
    total_days: int
    credit: Decimal
    immediate_charge: Decimal
    next_billing_amount: Decimal


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    seq: int
    subscription_id: str | None = None
    event_type: str
    occurred_at: datetime
    recorded_at: datetime
    actor: str
    amount: Decimal | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")


class AuditVerifyResponse(BaseModel):
    valid: bool
    entries_checked: int


# ---------------------------------------------------------------------------
# Cron schemas
# ---------------------------------------------------------------------------


class WebhookReprocessResponse(BaseModel):
    attempted: int
    by_status: dict[str, int]


class LockCleanupResponse(BaseModel):
    purged: int
