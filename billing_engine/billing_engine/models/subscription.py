"""Subscription state enums and read models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a tenant subscription.

    ``CANCELLED`` is terminal: no transition leaves it.
    """

    TRIALING = "trialing"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class CancelMode(str, Enum):
    """When a cancellation takes effect."""

    IMMEDIATE = "immediate"
    PERIOD_END = "period_end"


class PendingAction(str, Enum):
    """Recurring work the batch processor performs when ``next_action_at`` is due."""

    RENEWAL = "renewal"
    CANCELLATION = "cancellation"
    TRIAL_EXPIRATION = "trial_expiration"


class ActionStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"


class SubscriptionSnapshot(BaseModel):
    """Immutable view of a subscription row returned by lifecycle operations."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    tenant_id: str
    plan_id: str
    billing_cycle: BillingCycle
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    amount: Decimal
    credit_balance: Decimal = Decimal("0")
    trial_end: datetime | None = None
    next_charge_date: datetime | None = None
    cancel_at_period_end: bool = False
    cancelled_at: datetime | None = None
    paused_at: datetime | None = None
    pending_action: PendingAction | None = None
    next_action_at: datetime | None = None
    action_status: ActionStatus | None = None


class TransitionResult(BaseModel):
    """Outcome of a lifecycle transition.

    ``replayed`` is ``True`` when the idempotency key matched an earlier,
    identical request and no new effects were applied.
    """

    subscription: SubscriptionSnapshot
    event_type: str
    audit_event_id: str | None = None
    amount: Decimal | None = Field(
        default=None,
        description="Money moved by the transition (charge or credit), rounded to cents.",
    )
    replayed: bool = False
