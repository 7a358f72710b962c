"""Payment-provider webhook adapters: signature verification and normalization.

Each adapter turns a raw delivery (body bytes plus headers) into a verified
JSON payload and then into one of the normalized
:data:`~billing_engine.models.events.ProviderEvent` variants.  Adapters are
pure: they never touch the database.

Verification schemes:

* **Stripe** -- ``Stripe-Signature`` header checked with
  ``stripe.WebhookSignature.verify_header`` (timestamped HMAC-SHA256 with a
  replay tolerance).
* **Polar** -- hex HMAC-SHA256 of the raw body in ``polar-signature``.
* **PayPal** -- the transmission headers plus an HMAC-SHA256 over
  ``transmission_id|transmission_time|webhook_id|crc32(body)`` in
  ``paypal-transmission-sig``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import zlib
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

import stripe
from billing_engine.models.events import (
    AuthorizationCreated,
    OrderApproved,
    PaymentFailed,
    PaymentSucceeded,
    Provider,
    ProviderEvent,
    SubscriptionCancelled,
    TrialWillEnd,
    UnknownEvent,
)

from billing_api.config import APISettings

logger = logging.getLogger(__name__)


class WebhookRejectedError(Exception):
    """A delivery failed verification and must not be recorded.

    ``status_code`` is 401 for signature failures and 400 for malformed or
    unroutable deliveries.
    """

    def __init__(self, reason: str, *, status_code: int = 401) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


def _lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def _parse_json(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookRejectedError("Invalid JSON payload", status_code=400) from exc
    if not isinstance(payload, dict):
        raise WebhookRejectedError("Webhook payload must be a JSON object", status_code=400)
    return payload


def _minor_units(value: Any) -> Decimal | None:
    """Convert an integer amount in cents to a ``Decimal`` in currency units."""
    if value is None:
        return None
    try:
        return (Decimal(int(value)) / Decimal(100)).quantize(Decimal("0.01"))
    except (TypeError, ValueError, InvalidOperation):
        return None


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _from_epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


def _from_iso(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ProviderAdapter(ABC):
    """Verification and normalization for one payment provider."""

    provider: Provider

    @abstractmethod
    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        """Authenticate the delivery and return its parsed JSON payload.

        Raises
        ------
        WebhookRejectedError
            If the signature is missing, wrong or the secret is unset.
        """

    @abstractmethod
    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str]) -> ProviderEvent:
        """Translate a verified payload into a normalized event."""


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


class StripeAdapter(ProviderAdapter):
    provider = Provider.STRIPE

    def __init__(self, webhook_secret: str, *, tolerance_seconds: int = 300) -> None:
        self._secret = webhook_secret
        self._tolerance = tolerance_seconds

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        if not self._secret:
            raise WebhookRejectedError("Stripe webhook secret is not configured")
        sig_header = _lower_headers(headers).get("stripe-signature", "")
        if not sig_header:
            raise WebhookRejectedError("Missing Stripe-Signature header")
        try:
            payload_text = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise WebhookRejectedError("Webhook body is not UTF-8", status_code=400) from exc

        try:
            stripe.WebhookSignature.verify_header(payload_text, sig_header, self._secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookRejectedError("Signature verification failed") from exc

        return _parse_json(raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str]) -> ProviderEvent:
        event_type = str(payload.get("type", ""))
        obj: dict[str, Any] = (payload.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        is_subscription_object = event_type.startswith("customer.subscription.")

        base: dict[str, Any] = {
            "provider": self.provider,
            "provider_event_id": str(payload.get("id", "")),
            "event_type": event_type,
            "occurred_at": _from_epoch(payload.get("created")) or datetime.now(UTC),
            "tenant_id": metadata.get("tenant_id"),
            "provider_customer_id": obj.get("customer"),
            "provider_subscription_id": obj.get("id") if is_subscription_object else obj.get("subscription"),
        }

        if event_type in ("invoice.payment_succeeded", "invoice.paid"):
            return PaymentSucceeded(
                **base,
                amount=_minor_units(obj.get("amount_paid")),
                currency=obj.get("currency"),
            )
        if event_type == "invoice.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            return PaymentFailed(
                **base,
                amount=_minor_units(obj.get("amount_due")),
                currency=obj.get("currency"),
                failure_reason=last_error.get("message") or obj.get("billing_reason"),
            )
        if event_type == "customer.subscription.deleted":
            details = obj.get("cancellation_details") or {}
            return SubscriptionCancelled(**base, reason=details.get("reason"))
        if event_type == "customer.subscription.trial_will_end":
            return TrialWillEnd(**base, trial_end=_from_epoch(obj.get("trial_end")))
        return UnknownEvent(**base)


# ---------------------------------------------------------------------------
# Polar
# ---------------------------------------------------------------------------


class PolarAdapter(ProviderAdapter):
    provider = Provider.POLAR

    def __init__(self, webhook_secret: str) -> None:
        self._secret = webhook_secret

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        if not self._secret:
            raise WebhookRejectedError("Polar webhook secret is not configured")
        signature = _lower_headers(headers).get("polar-signature", "")
        if not signature:
            raise WebhookRejectedError("Missing polar-signature header")

        expected = hmac.new(self._secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature.strip()):
            logger.warning("Polar webhook signature verification failed")
            raise WebhookRejectedError("Signature verification failed")
        return _parse_json(raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str]) -> ProviderEvent:
        event_type = str(payload.get("type", ""))
        data: dict[str, Any] = payload.get("data") or {}
        metadata = data.get("metadata") or {}
        data_id = data.get("id")

        # Polar payloads carry no envelope id; the delivery id header is
        # stable across redeliveries.
        event_id = payload.get("id") or _lower_headers(headers).get("webhook-id") or f"{event_type}:{data_id}"

        base: dict[str, Any] = {
            "provider": self.provider,
            "provider_event_id": str(event_id),
            "event_type": event_type,
            "occurred_at": _from_iso(data.get("modified_at") or data.get("created_at")) or datetime.now(UTC),
            "tenant_id": metadata.get("tenant_id"),
            "provider_customer_id": data.get("customer_id"),
            "provider_subscription_id": (
                data_id if event_type.startswith("subscription.") else data.get("subscription_id")
            ),
        }

        if event_type in ("order.created", "order.paid"):
            return PaymentSucceeded(
                **base,
                amount=_minor_units(data.get("amount")),
                currency=data.get("currency"),
            )
        if event_type in ("subscription.canceled", "subscription.revoked"):
            return SubscriptionCancelled(**base, reason=data.get("customer_cancellation_reason"))
        return UnknownEvent(**base)


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


_PAYPAL_REQUIRED_HEADERS: tuple[str, ...] = (
    "paypal-transmission-id",
    "paypal-transmission-time",
    "paypal-transmission-sig",
)


def paypal_signature(secret: str, transmission_id: str, transmission_time: str, webhook_id: str, body: bytes) -> str:
    """Return the expected ``paypal-transmission-sig`` for a delivery."""
    message = f"{transmission_id}|{transmission_time}|{webhook_id}|{zlib.crc32(body)}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class PayPalAdapter(ProviderAdapter):
    provider = Provider.PAYPAL

    def __init__(self, webhook_secret: str, webhook_id: str = "") -> None:
        self._secret = webhook_secret
        self._webhook_id = webhook_id

    def verify(self, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, Any]:
        if not self._secret:
            raise WebhookRejectedError("PayPal webhook secret is not configured")
        lowered = _lower_headers(headers)
        missing = [name for name in _PAYPAL_REQUIRED_HEADERS if not lowered.get(name)]
        if missing:
            raise WebhookRejectedError(f"Missing PayPal headers: {', '.join(missing)}")

        expected = paypal_signature(
            self._secret,
            lowered["paypal-transmission-id"],
            lowered["paypal-transmission-time"],
            self._webhook_id,
            raw_body,
        )
        if not hmac.compare_digest(expected, lowered["paypal-transmission-sig"].strip()):
            logger.warning("PayPal webhook signature verification failed")
            raise WebhookRejectedError("Signature verification failed")
        return _parse_json(raw_body)

    def normalize(self, payload: dict[str, Any], headers: Mapping[str, str]) -> ProviderEvent:
        event_type = str(payload.get("event_type", ""))
        resource: dict[str, Any] = payload.get("resource") or {}
        payer = resource.get("payer") or {}

        # Checkout sets custom_id to the tenant id; orders carry it per purchase unit.
        custom_id = resource.get("custom_id")
        if custom_id is None:
            units = resource.get("purchase_units") or [{}]
            custom_id = units[0].get("custom_id")

        base: dict[str, Any] = {
            "provider": self.provider,
            "provider_event_id": str(payload.get("id", "")),
            "event_type": event_type,
            "occurred_at": _from_iso(payload.get("create_time")) or datetime.now(UTC),
            "tenant_id": custom_id,
            "provider_customer_id": payer.get("payer_id"),
            "provider_subscription_id": resource.get("billing_agreement_id"),
        }
        amount = _decimal((resource.get("amount") or {}).get("value"))
        currency = (resource.get("amount") or {}).get("currency_code")

        if event_type == "PAYMENT.CAPTURE.COMPLETED":
            return PaymentSucceeded(**base, amount=amount, currency=currency)
        if event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"):
            return PaymentFailed(
                **base,
                amount=amount,
                currency=currency,
                failure_reason=resource.get("reason") or "Payment failed",
            )
        if event_type == "CHECKOUT.ORDER.APPROVED":
            return OrderApproved(**base, order_id=resource.get("id"), amount=amount)
        if event_type == "PAYMENT.AUTHORIZATION.CREATED":
            return AuthorizationCreated(
                **base,
                authorization_id=resource.get("id"),
                amount=amount,
            )
        return UnknownEvent(**base)


def build_adapters(settings: APISettings) -> dict[Provider, ProviderAdapter]:
    """Return one adapter per supported provider, configured from *settings*."""
    return {
        Provider.STRIPE: StripeAdapter(
            settings.stripe_webhook_secret.get_secret_value(),
            tolerance_seconds=settings.stripe_signature_tolerance_seconds,
        ),
        Provider.POLAR: PolarAdapter(settings.polar_webhook_secret.get_secret_value()),
        Provider.PAYPAL: PayPalAdapter(
            settings.paypal_webhook_secret.get_secret_value(),
            settings.paypal_webhook_id,
        ),
    }
