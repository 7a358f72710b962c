"""Typed errors raised by the billing core.

Every error carries two messages:

* ``user_message`` -- a short, human-readable reason that is safe to show
  to the tenant (e.g. "insufficient trailing period").
* ``detail`` -- internal diagnostic detail that is logged but never returned
  to API callers.

The hierarchy mirrors how callers are expected to react:

* :class:`BillingValidationError` -- rejected synchronously, never retried.
* :class:`BillingNotFoundError` -- the referenced plan or subscription does
  not exist; permanent.
* :class:`StaleEventError` -- an integrity violation (out-of-order event).
  Handled as a no-op rather than as a failure.
* :class:`TransientBillingError` -- infrastructure hiccup; safe to retry.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all billing-core errors."""

    default_user_message = "The billing operation could not be completed."

    def __init__(self, detail: str, *, user_message: str | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.user_message = user_message or self.default_user_message


class BillingValidationError(BillingError):
    """The request is invalid for the current billing state."""

    default_user_message = "The request is not valid for this subscription."


class InvalidTransitionError(BillingValidationError):
    """The subscription's current status does not permit the transition."""

    def __init__(
        self,
        current_status: str,
        operation: str,
        *,
        user_message: str | None = None,
    ) -> None:
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} a subscription in status '{current_status}'",
            user_message=user_message or f"This action is not allowed while the subscription is {current_status}.",
        )


class IdempotencyConflictError(BillingValidationError):
    """An idempotency key was reused with a different request payload."""

    default_user_message = "This idempotency key was already used for a different request."

    def __init__(self, idempotency_key: str, detail: str | None = None) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(detail or f"Idempotency key {idempotency_key!r} reused with a conflicting payload")


class ProrationError(BillingValidationError, ValueError):
    """Proration inputs are invalid (zero-length period, negative amounts)."""

    default_user_message = "Insufficient trailing period to prorate this change."


class SubscriptionExistsError(BillingValidationError):
    """The tenant already has a non-cancelled subscription."""

    default_user_message = "This account already has an active subscription."


class BillingNotFoundError(BillingError):
    """A referenced billing entity does not exist."""

    default_user_message = "The requested billing record was not found."


class SubscriptionNotFoundError(BillingNotFoundError):
    """No subscription exists for the tenant."""

    default_user_message = "No subscription was found for this account."


class PlanNotFoundError(BillingNotFoundError):
    """The plan identifier is not in the catalog."""

    default_user_message = "The selected plan does not exist."


class StaleEventError(BillingError):
    """The event predates the subscription's most recent audit event."""

    default_user_message = "The event is older than the subscription's current state."


class TransientBillingError(BillingError):
    """A retryable infrastructure failure (datastore or provider timeout)."""

    default_user_message = "A temporary error occurred. Please retry."
