"""Normalized payment-provider events.

Each provider delivers its own JSON shape.  Adapters in the API layer
translate raw payloads into one of the variants below so that handler
dispatch works on a closed set of ``kind`` values.  Event types that no
adapter recognizes become :class:`UnknownEvent` and are acknowledged as
no-ops.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class Provider(str, Enum):
    """Payment providers that can deliver webhooks."""

    STRIPE = "stripe"
    POLAR = "polar"
    PAYPAL = "paypal"


class _ProviderEventBase(BaseModel):
    provider: Provider
    provider_event_id: str = Field(..., min_length=1, max_length=255)
    event_type: str = Field(..., description="Provider-native event type string.")
    occurred_at: datetime = Field(..., description="When the provider says the event happened.")
    tenant_id: str | None = Field(
        default=None,
        description="Tenant hint carried in the payload metadata, if any.",
    )
    provider_customer_id: str | None = None
    provider_subscription_id: str | None = None


class PaymentSucceeded(_ProviderEventBase):
    kind: Literal["payment_succeeded"] = "payment_succeeded"
    amount: Decimal | None = None
    currency: str | None = None


class PaymentFailed(_ProviderEventBase):
    kind: Literal["payment_failed"] = "payment_failed"
    amount: Decimal | None = None
    currency: str | None = None
    failure_reason: str | None = None


class OrderApproved(_ProviderEventBase):
    kind: Literal["order_approved"] = "order_approved"
    order_id: str | None = None
    amount: Decimal | None = None


class AuthorizationCreated(_ProviderEventBase):
    kind: Literal["authorization_created"] = "authorization_created"
    authorization_id: str | None = None
    amount: Decimal | None = None


class SubscriptionCancelled(_ProviderEventBase):
    kind: Literal["subscription_cancelled"] = "subscription_cancelled"
    reason: str | None = None


class TrialWillEnd(_ProviderEventBase):
    kind: Literal["trial_will_end"] = "trial_will_end"
    trial_end: datetime | None = None


class UnknownEvent(_ProviderEventBase):
    kind: Literal["unknown"] = "unknown"


ProviderEvent = Annotated[
    Union[
        PaymentSucceeded,
        PaymentFailed,
        OrderApproved,
        AuthorizationCreated,
        SubscriptionCancelled,
        TrialWillEnd,
        UnknownEvent,
    ],
    Field(discriminator="kind"),
]

_provider_event_adapter: TypeAdapter[ProviderEvent] = TypeAdapter(ProviderEvent)


def parse_provider_event(data: dict[str, Any]) -> ProviderEvent:
    """Validate a normalized event dict into its tagged variant."""
    return _provider_event_adapter.validate_python(data)


class WebhookStatus(str, Enum):
    """Acknowledgement outcomes returned to the provider transport."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    STALE = "stale"
    FAILED = "failed"


class WebhookResult(BaseModel):
    """Acknowledgement for a verified delivery.

    Every ``WebhookResult`` is an ack (HTTP 200): the provider should stop
    redelivering.  ``FAILED`` deliveries are surfaced through the audit trail
    and reprocessed internally.
    """

    status: WebhookStatus
    provider: Provider
    provider_event_id: str | None = None
    event_kind: str | None = None
    tenant_id: str | None = None
    detail: str | None = None
