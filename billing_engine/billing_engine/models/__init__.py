"""Pydantic models and enums shared across the billing core."""

from billing_engine.models.events import Provider, ProviderEvent, WebhookResult, WebhookStatus
from billing_engine.models.subscription import (
    ActionStatus,
    BillingCycle,
    CancelMode,
    PendingAction,
    SubscriptionSnapshot,
    SubscriptionStatus,
    TransitionResult,
)
from billing_engine.models.usage import UNLIMITED, UsageDecision, UsageStatus, UsageType

__all__ = [
    "UNLIMITED",
    "ActionStatus",
    "BillingCycle",
    "CancelMode",
    "PendingAction",
    "Provider",
    "ProviderEvent",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "TransitionResult",
    "UsageDecision",
    "UsageStatus",
    "UsageType",
    "WebhookResult",
    "WebhookStatus",
]
