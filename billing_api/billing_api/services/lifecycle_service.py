"""Subscription lifecycle manager.

Owns every mutation of a tenant's subscription.  Allowed transitions::

    trialing --activate (payment)--> active
    active   --pause-->              paused
    paused   --resume-->             active
    active   --change_plan-->        active
    active   --renew-->              active
    trialing --expire_trial-->       cancelled
    trialing|active|paused --cancel--> cancelled (immediate) or scheduled (period_end)

Every operation follows the same pattern inside the caller's transaction:

1. Replay check: an audit event already carrying the idempotency key
   returns the current state unchanged when the request fingerprint
   matches, and raises :class:`IdempotencyConflictError` otherwise.
2. Load and lock the subscription row.
3. Reject events older than the subscription's latest audit event.
4. Validate the transition, compute money via the proration calculator,
   update the row and append exactly one audit event.

Nothing is committed here.  Errors propagate so the caller's transaction
rolls back as a whole.  Notifications are queued on the manager and must
be sent by the caller after commit (see :meth:`drain_notifications`).
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from billing_engine.billing.periods import add_billing_period, trial_end_from
from billing_engine.billing.proration import ProrationResult, prorate, quantize_money, surplus_credit
from billing_engine.errors import (
    BillingValidationError,
    IdempotencyConflictError,
    InvalidTransitionError,
    StaleEventError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
)
from billing_engine.models.subscription import (
    ActionStatus,
    BillingCycle,
    CancelMode,
    PendingAction,
    SubscriptionSnapshot,
    SubscriptionStatus,
    TransitionResult,
)
from billing_engine.plans.catalog import PlanCatalog
from billing_engine.state.repository import AuditEventRepository, SubscriptionRepository
from billing_engine.state.tables import AuditEventTable, SubscriptionTable
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.audit_service import BillingAuditAction
from billing_api.services.notification_service import Notification, NotificationTemplate

logger = logging.getLogger(__name__)

_ZERO = Decimal("0.00")

# Provider facts recorded without a state change.
_BILLING_FACTS = frozenset(
    {
        BillingAuditAction.ORDER_APPROVED,
        BillingAuditAction.AUTHORIZATION_CREATED,
        BillingAuditAction.TRIAL_WILL_END,
    }
)


def _utc(now: datetime | None) -> datetime:
    if now is None:
        return datetime.now(UTC)
    if now.tzinfo is None:
        return now.replace(tzinfo=UTC)
    return now.astimezone(UTC)


def request_fingerprint(operation: str, params: dict[str, Any]) -> str:
    """SHA-256 over the operation name and its canonical JSON parameters."""
    canonical = json.dumps({"operation": operation, **params}, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _clear_pending_action(row: SubscriptionTable) -> None:
    row.pending_action = None
    row.next_action_at = None
    row.action_status = None


def _schedule(row: SubscriptionTable, action: PendingAction, at: datetime) -> None:
    row.pending_action = action.value
    row.next_action_at = at
    row.action_status = ActionStatus.PENDING.value


class SubscriptionLifecycleManager:
    """Apply lifecycle transitions to one tenant's subscription.

    Parameters
    ----------
    session:
        Active database session; the caller owns commit and rollback.
    tenant_id:
        Tenant whose subscription is managed.
    catalog:
        Plan catalog for prices and trial lengths.
    actor:
        Principal recorded on audit events (``"user:<id>"``,
        ``"provider:stripe"``, ``"system:batch"``...).
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        catalog: PlanCatalog,
        *,
        actor: str = "system",
    ) -> None:
        self._tenant_id = tenant_id
        self._catalog = catalog
        self._actor = actor
        self._subscriptions = SubscriptionRepository(session, tenant_id)
        self._audit = AuditEventRepository(session, tenant_id)
        self._notifications: list[Notification] = []

    # -- helpers -------------------------------------------------------------

    def drain_notifications(self) -> list[Notification]:
        """Return and clear notifications queued by committed-to-be transitions."""
        queued, self._notifications = self._notifications, []
        return queued

    def _notify(self, template: str, **context: Any) -> None:
        self._notifications.append(Notification(tenant_id=self._tenant_id, template=template, context=context))

    async def _replay(self, idempotency_key: str | None, fingerprint: str) -> TransitionResult | None:
        if not idempotency_key:
            return None
        existing = await self._audit.get_by_idempotency_key(idempotency_key)
        if existing is None:
            return None

        stored = (existing.metadata_json or {}).get("request_hash")
        if stored != fingerprint:
            raise IdempotencyConflictError(idempotency_key)

        row = await self._subscriptions.get(existing.subscription_id) if existing.subscription_id else None
        if row is None:
            raise SubscriptionNotFoundError(f"Audit event {existing.id} references a missing subscription")
        logger.info("Replaying idempotent request key=%s event=%s", idempotency_key, existing.event_type)
        return TransitionResult(
            subscription=SubscriptionSnapshot.model_validate(row),
            event_type=existing.event_type,
            audit_event_id=existing.id,
            amount=existing.amount,
            replayed=True,
        )

    async def _require_open(self, operation: str) -> SubscriptionTable:
        """Return the tenant's non-cancelled subscription, locked for update."""
        row = await self._subscriptions.get_open(for_update=True)
        if row is not None:
            return row
        latest = await self._subscriptions.get_latest()
        if latest is not None:
            raise InvalidTransitionError(latest.status, operation)
        raise SubscriptionNotFoundError(f"Tenant {self._tenant_id} has no subscription")

    async def _require_latest(self) -> SubscriptionTable:
        row = await self._subscriptions.get_open(for_update=True) or await self._subscriptions.get_latest()
        if row is None:
            raise SubscriptionNotFoundError(f"Tenant {self._tenant_id} has no subscription")
        return row

    async def _guard_stale(self, row: SubscriptionTable, occurred_at: datetime) -> None:
        latest = await self._audit.latest_for_subscription(row.id)
        if latest is not None and occurred_at < latest.occurred_at:
            raise StaleEventError(
                f"Event at {occurred_at.isoformat()} predates subscription {row.id}'s "
                f"last event '{latest.event_type}' at {latest.occurred_at.isoformat()}"
            )

    async def _begin(
        self,
        operation: str,
        params: dict[str, Any],
        idempotency_key: str | None,
        occurred_at: datetime,
        *,
        include_cancelled: bool = False,
    ) -> tuple[str, SubscriptionTable | TransitionResult]:
        """Run the replay check, lock the row and apply the stale guard.

        Returns the request fingerprint with either the locked row or, for
        a replay, the replayed result.
        """
        fingerprint = request_fingerprint(operation, params)
        replayed = await self._replay(idempotency_key, fingerprint)
        if replayed is not None:
            return fingerprint, replayed

        row = await (self._require_latest() if include_cancelled else self._require_open(operation))

        # Re-check under the row lock; a concurrent request may have
        # committed the same key while this one waited.
        replayed = await self._replay(idempotency_key, fingerprint)
        if replayed is not None:
            return fingerprint, replayed

        await self._guard_stale(row, occurred_at)
        return fingerprint, row

    async def _commit_transition(
        self,
        row: SubscriptionTable,
        event_type: str,
        *,
        occurred_at: datetime,
        fingerprint: str,
        idempotency_key: str | None,
        amount: Decimal | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> TransitionResult:
        await self._subscriptions.save(row)
        event = await self._audit.append(
            event_type=event_type,
            actor=self._actor,
            occurred_at=occurred_at,
            subscription_id=row.id,
            amount=amount,
            idempotency_key=idempotency_key,
            metadata={"request_hash": fingerprint, **(metadata or {})},
        )
        logger.info(
            "Subscription transition: tenant=%s subscription=%s event=%s status=%s",
            self._tenant_id,
            row.id,
            event_type,
            row.status,
            extra={"billing": {"tenant_id": self._tenant_id, "subscription_id": row.id, "event": event_type}},
        )
        return TransitionResult(
            subscription=SubscriptionSnapshot.model_validate(row),
            event_type=event_type,
            audit_event_id=event.id,
            amount=amount,
        )

    # -- reads ---------------------------------------------------------------

    async def get_current(self) -> SubscriptionSnapshot:
        """Return the open subscription, else the most recent cancelled one."""
        row = await self._subscriptions.get_latest()
        if row is None:
            raise SubscriptionNotFoundError(f"Tenant {self._tenant_id} has no subscription")
        return SubscriptionSnapshot.model_validate(row)

    async def audit_trail(self, *, event_type: str | None = None, limit: int = 100) -> list[AuditEventTable]:
        """Return the current subscription's audit events, oldest first."""
        row = await self._subscriptions.get_latest()
        if row is None:
            raise SubscriptionNotFoundError(f"Tenant {self._tenant_id} has no subscription")
        return await self._audit.list_for_subscription(row.id, event_type=event_type, limit=limit)

    async def is_cancelled(self) -> bool:
        """True when the tenant's most recent subscription is cancelled."""
        row = await self._subscriptions.get_latest()
        return row is not None and row.status == SubscriptionStatus.CANCELLED.value

    async def preview_change(self, new_plan_id: str, *, now: datetime | None = None) -> ProrationResult:
        """Return the proration for switching to *new_plan_id* without mutating state."""
        now = _utc(now)
        row = await self._subscriptions.get_open()
        if row is None:
            raise SubscriptionNotFoundError(f"Tenant {self._tenant_id} has no open subscription")
        plan = self._catalog.get(new_plan_id)
        new_amount = plan.price_for(BillingCycle(row.billing_cycle))
        return prorate(row.amount, new_amount, row.current_period_start, row.current_period_end, now)

    # -- creation ------------------------------------------------------------

    async def create_subscription(
        self,
        plan_id: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        *,
        trial_days: int | None = None,
        provider: str | None = None,
        provider_customer_id: str | None = None,
        provider_subscription_id: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Start a subscription: ``trialing`` when a trial applies, else ``active``.

        Raises
        ------
        PlanNotFoundError
            If *plan_id* is not in the catalog.
        SubscriptionExistsError
            If the tenant already has a non-cancelled subscription.
        """
        now = _utc(now)
        billing_cycle = BillingCycle(billing_cycle)
        fingerprint = request_fingerprint(
            "create",
            {"plan_id": plan_id, "billing_cycle": billing_cycle.value, "trial_days": trial_days},
        )
        replayed = await self._replay(idempotency_key, fingerprint)
        if replayed is not None:
            return replayed

        plan = self._catalog.get(plan_id)
        if await self._subscriptions.get_open(for_update=True) is not None:
            raise SubscriptionExistsError(f"Tenant {self._tenant_id} already has an open subscription")

        amount = quantize_money(plan.price_for(billing_cycle))
        days = plan.trial_days if trial_days is None else trial_days
        if days < 0:
            raise BillingValidationError(f"trial_days must be >= 0, got {days}")

        row = SubscriptionTable(
            id=uuid.uuid4().hex,
            tenant_id=self._tenant_id,
            plan_id=plan.plan_id,
            billing_cycle=billing_cycle.value,
            amount=amount,
            credit_balance=_ZERO,
            cancel_at_period_end=False,
            provider=provider,
            provider_customer_id=provider_customer_id,
            provider_subscription_id=provider_subscription_id,
            created_at=now,
            updated_at=now,
        )
        if days > 0:
            trial_end = trial_end_from(now, days)
            row.status = SubscriptionStatus.TRIALING.value
            row.current_period_start = now
            row.current_period_end = trial_end
            row.trial_end = trial_end
            row.next_charge_date = trial_end
            _schedule(row, PendingAction.TRIAL_EXPIRATION, trial_end)
            charged: Decimal | None = None
        else:
            period_end = add_billing_period(now, billing_cycle)
            row.status = SubscriptionStatus.ACTIVE.value
            row.current_period_start = now
            row.current_period_end = period_end
            row.next_charge_date = period_end
            _schedule(row, PendingAction.RENEWAL, period_end)
            charged = amount

        try:
            await self._subscriptions.add(row)
        except IntegrityError as exc:
            raise SubscriptionExistsError(f"Tenant {self._tenant_id} already has an open subscription") from exc

        return await self._commit_transition(
            row,
            BillingAuditAction.SUBSCRIPTION_CREATED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=charged,
            metadata={"plan_id": plan.plan_id, "billing_cycle": billing_cycle.value, "trial_days": days},
        )

    # -- transitions ---------------------------------------------------------

    async def activate(
        self,
        *,
        amount: Decimal | None = None,
        currency: str | None = None,
        payment_reference: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Convert a trial to ``active`` on a successful payment.

        The first paid period starts at the payment time.
        """
        now = _utc(now)
        fingerprint, begun = await self._begin(
            "activate",
            {"amount": amount, "currency": currency, "reference": payment_reference, "at": now},
            idempotency_key,
            now,
        )
        if isinstance(begun, TransitionResult):
            return begun
        return await self._activate(begun, fingerprint, idempotency_key, now, amount, currency, payment_reference)

    async def _activate(
        self,
        row: SubscriptionTable,
        fingerprint: str,
        idempotency_key: str | None,
        now: datetime,
        amount: Decimal | None,
        currency: str | None,
        payment_reference: str | None,
    ) -> TransitionResult:
        if row.status != SubscriptionStatus.TRIALING.value:
            raise InvalidTransitionError(row.status, "activate")
        if row.cancel_at_period_end:
            raise InvalidTransitionError(
                row.status,
                "activate",
                user_message="A cancellation is already scheduled for this subscription.",
            )

        period_end = add_billing_period(now, BillingCycle(row.billing_cycle))
        row.status = SubscriptionStatus.ACTIVE.value
        row.current_period_start = now
        row.current_period_end = period_end
        row.next_charge_date = period_end
        _schedule(row, PendingAction.RENEWAL, period_end)

        paid = quantize_money(amount) if amount is not None else row.amount
        result = await self._commit_transition(
            row,
            BillingAuditAction.SUBSCRIPTION_ACTIVATED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=paid,
            metadata={"currency": currency, "payment_reference": payment_reference},
        )
        self._notify(NotificationTemplate.PAYMENT_CONFIRMED, amount=str(paid), subscription_id=row.id)
        return result

    async def pause(self, *, idempotency_key: str | None = None, now: datetime | None = None) -> TransitionResult:
        """Pause an active subscription, crediting the unused part of the period."""
        now = _utc(now)
        fingerprint, begun = await self._begin("pause", {}, idempotency_key, now)
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if row.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidTransitionError(row.status, "pause")
        if row.cancel_at_period_end:
            raise InvalidTransitionError(
                row.status,
                "pause",
                user_message="A cancellation is already scheduled for this subscription.",
            )

        proration = prorate(row.amount, _ZERO, row.current_period_start, row.current_period_end, now)
        row.credit_balance = quantize_money(row.credit_balance + proration.credit)
        row.status = SubscriptionStatus.PAUSED.value
        row.paused_at = now
        row.next_charge_date = None
        _clear_pending_action(row)

        return await self._commit_transition(
            row,
            BillingAuditAction.SUBSCRIPTION_PAUSED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=proration.credit,
            metadata={
                "unused_days": proration.unused_days,
                "total_days": proration.total_days,
                "credit_balance": str(row.credit_balance),
            },
        )

    async def resume(self, *, idempotency_key: str | None = None, now: datetime | None = None) -> TransitionResult:
        """Resume a paused subscription with a fresh period starting now.

        The charge is the plan amount less any available credit.
        """
        now = _utc(now)
        fingerprint, begun = await self._begin("resume", {}, idempotency_key, now)
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if row.status != SubscriptionStatus.PAUSED.value:
            raise InvalidTransitionError(row.status, "resume")
        if row.cancel_at_period_end:
            raise InvalidTransitionError(
                row.status,
                "resume",
                user_message="A cancellation is already scheduled for this subscription.",
            )

        credit_applied = min(row.credit_balance, row.amount)
        charge = quantize_money(row.amount - credit_applied)
        period_end = add_billing_period(now, BillingCycle(row.billing_cycle))

        row.credit_balance = quantize_money(row.credit_balance - credit_applied)
        row.status = SubscriptionStatus.ACTIVE.value
        row.paused_at = None
        row.current_period_start = now
        row.current_period_end = period_end
        row.next_charge_date = period_end
        _schedule(row, PendingAction.RENEWAL, period_end)

        return await self._commit_transition(
            row,
            BillingAuditAction.SUBSCRIPTION_RESUMED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=charge,
            metadata={"credit_applied": str(credit_applied), "credit_balance": str(row.credit_balance)},
        )

    async def cancel(
        self,
        mode: CancelMode = CancelMode.IMMEDIATE,
        *,
        reason: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Cancel now, or schedule cancellation at the end of the current period.

        A paused subscription whose period has already ended is cancelled
        immediately even when ``period_end`` is requested.
        """
        now = _utc(now)
        mode = CancelMode(mode)
        fingerprint, begun = await self._begin(
            "cancel",
            {"mode": mode.value, "reason": reason},
            idempotency_key,
            now,
        )
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if mode == CancelMode.PERIOD_END and row.current_period_end > now:
            if row.cancel_at_period_end:
                raise InvalidTransitionError(
                    row.status,
                    "schedule cancellation",
                    user_message="A cancellation is already scheduled for this subscription.",
                )
            row.cancel_at_period_end = True
            row.cancellation_reason = reason
            row.next_charge_date = None
            _schedule(row, PendingAction.CANCELLATION, row.current_period_end)
            return await self._commit_transition(
                row,
                BillingAuditAction.CANCEL_SCHEDULED,
                occurred_at=now,
                fingerprint=fingerprint,
                idempotency_key=idempotency_key,
                metadata={"effective_at": row.current_period_end.isoformat(), "reason": reason},
            )

        return await self._cancel_now(row, fingerprint, idempotency_key, now, reason=reason, mode=CancelMode.IMMEDIATE)

    async def _cancel_now(
        self,
        row: SubscriptionTable,
        fingerprint: str,
        idempotency_key: str | None,
        now: datetime,
        *,
        reason: str | None,
        mode: CancelMode,
        event_type: str = BillingAuditAction.SUBSCRIPTION_CANCELLED,
    ) -> TransitionResult:
        previous_status = row.status
        row.status = SubscriptionStatus.CANCELLED.value
        row.cancelled_at = now
        row.cancellation_reason = reason
        row.cancel_at_period_end = False
        row.next_charge_date = None
        row.paused_at = None
        _clear_pending_action(row)

        result = await self._commit_transition(
            row,
            event_type,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            metadata={"mode": mode.value, "reason": reason, "previous_status": previous_status},
        )
        if event_type == BillingAuditAction.TRIAL_EXPIRED:
            self._notify(NotificationTemplate.TRIAL_ENDED, subscription_id=row.id)
        else:
            self._notify(NotificationTemplate.SUBSCRIPTION_CANCELLED, subscription_id=row.id, reason=reason)
        return result

    async def change_plan(
        self,
        new_plan_id: str,
        *,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Switch an active subscription to *new_plan_id* mid-period.

        The immediate charge comes from :func:`prorate`.  On a downgrade the
        old plan's unused value beyond the new plan's cost for the same days
        is added to ``credit_balance``.  The period is unchanged; the next
        renewal bills the new amount.
        """
        now = _utc(now)
        fingerprint, begun = await self._begin("change_plan", {"plan_id": new_plan_id}, idempotency_key, now)
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if row.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidTransitionError(row.status, "change the plan of")
        if row.cancel_at_period_end:
            raise InvalidTransitionError(
                row.status,
                "change the plan of",
                user_message="A cancellation is already scheduled for this subscription.",
            )
        plan = self._catalog.get(new_plan_id)
        if plan.plan_id == row.plan_id:
            raise BillingValidationError(
                f"Subscription {row.id} is already on plan {plan.plan_id!r}",
                user_message="The subscription is already on this plan.",
            )

        new_amount = quantize_money(plan.price_for(BillingCycle(row.billing_cycle)))
        proration = prorate(row.amount, new_amount, row.current_period_start, row.current_period_end, now)
        surplus = surplus_credit(proration, new_amount)

        old_plan_id = row.plan_id
        row.plan_id = plan.plan_id
        row.amount = new_amount
        row.credit_balance = quantize_money(row.credit_balance + surplus)

        return await self._commit_transition(
            row,
            BillingAuditAction.PLAN_CHANGED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=proration.immediate_charge,
            metadata={
                "from_plan": old_plan_id,
                "to_plan": plan.plan_id,
                "credit": str(proration.credit),
                "surplus_credit": str(surplus),
                "unused_days": proration.unused_days,
                "total_days": proration.total_days,
                "next_billing_amount": str(proration.next_billing_amount),
            },
        )

    # -- scheduled actions (batch) -------------------------------------------

    async def renew(self, *, idempotency_key: str | None = None, now: datetime | None = None) -> TransitionResult:
        """Roll an active subscription into its next period and charge for it.

        Available ``credit_balance`` is consumed first.
        """
        now = _utc(now)
        fingerprint, begun = await self._begin("renew", {}, idempotency_key, now)
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if row.status != SubscriptionStatus.ACTIVE.value or row.cancel_at_period_end:
            raise InvalidTransitionError(row.status, "renew")

        old_end = row.current_period_end
        new_end = add_billing_period(old_end, BillingCycle(row.billing_cycle))
        credit_applied = min(row.credit_balance, row.amount)
        charge = quantize_money(row.amount - credit_applied)

        row.credit_balance = quantize_money(row.credit_balance - credit_applied)
        row.current_period_start = old_end
        row.current_period_end = new_end
        row.next_charge_date = new_end
        _schedule(row, PendingAction.RENEWAL, new_end)

        return await self._commit_transition(
            row,
            BillingAuditAction.RENEWAL_CHARGED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=charge,
            metadata={
                "period_start": old_end.isoformat(),
                "period_end": new_end.isoformat(),
                "credit_applied": str(credit_applied),
            },
        )

    async def complete_scheduled_cancellation(
        self,
        *,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Finish a period-end cancellation.  No charge is made."""
        now = _utc(now)
        fingerprint, begun = await self._begin("complete_cancellation", {}, idempotency_key, now)
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if not row.cancel_at_period_end:
            raise InvalidTransitionError(row.status, "complete a cancellation for")
        return await self._cancel_now(
            row,
            fingerprint,
            idempotency_key,
            now,
            reason=row.cancellation_reason,
            mode=CancelMode.PERIOD_END,
        )

    async def expire_trial(
        self,
        *,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Cancel a trial that reached ``trial_end`` without a payment."""
        now = _utc(now)
        fingerprint, begun = await self._begin("expire_trial", {}, idempotency_key, now)
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if row.status != SubscriptionStatus.TRIALING.value:
            raise InvalidTransitionError(row.status, "expire the trial of")
        if row.trial_end is not None and row.trial_end > now:
            raise BillingValidationError(
                f"Trial of subscription {row.id} ends at {row.trial_end.isoformat()}",
                user_message="The trial has not ended yet.",
            )
        return await self._cancel_now(
            row,
            fingerprint,
            idempotency_key,
            now,
            reason="trial_expired",
            mode=CancelMode.IMMEDIATE,
            event_type=BillingAuditAction.TRIAL_EXPIRED,
        )

    async def send_trial_reminder(
        self,
        subscription_id: str,
        *,
        days_remaining: int,
        now: datetime | None = None,
    ) -> TransitionResult | None:
        """Record a trial-ending reminder and queue its notification.

        At most one reminder is recorded per subscription and
        *days_remaining*.  Returns ``None`` when that reminder already
        exists or the subscription is no longer trialing.
        """
        now = _utc(now)
        key = f"trial_reminder:{subscription_id}:{days_remaining}"
        row = await self._subscriptions.get(subscription_id, for_update=True)
        if row is None or row.status != SubscriptionStatus.TRIALING.value or row.trial_end is None:
            return None
        if await self._audit.get_by_idempotency_key(key) is not None:
            return None

        result = await self._commit_transition(
            row,
            BillingAuditAction.TRIAL_REMINDER_SENT,
            occurred_at=now,
            fingerprint=request_fingerprint("trial_reminder", {"days_remaining": days_remaining}),
            idempotency_key=key,
            metadata={"days_remaining": days_remaining, "trial_end": row.trial_end.isoformat()},
        )
        self._notify(
            NotificationTemplate.TRIAL_ENDING,
            subscription_id=row.id,
            days_remaining=days_remaining,
            trial_end=row.trial_end.isoformat(),
        )
        return result

    # -- provider facts ------------------------------------------------------

    async def record_payment(
        self,
        *,
        amount: Decimal | None,
        currency: str | None = None,
        payment_reference: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Record a confirmed payment; a trialing subscription is activated."""
        now = _utc(now)
        fingerprint, begun = await self._begin(
            "payment",
            {"amount": amount, "currency": currency, "reference": payment_reference, "at": now},
            idempotency_key,
            now,
            include_cancelled=True,
        )
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        if row.status == SubscriptionStatus.TRIALING.value and not row.cancel_at_period_end:
            return await self._activate(row, fingerprint, idempotency_key, now, amount, currency, payment_reference)

        paid = quantize_money(amount) if amount is not None else None
        result = await self._commit_transition(
            row,
            BillingAuditAction.PAYMENT_SUCCEEDED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=paid,
            metadata={"currency": currency, "payment_reference": payment_reference},
        )
        self._notify(
            NotificationTemplate.PAYMENT_CONFIRMED,
            amount=str(paid) if paid is not None else None,
            subscription_id=row.id,
        )
        return result

    async def record_payment_failure(
        self,
        *,
        amount: Decimal | None,
        currency: str | None = None,
        failure_reason: str | None = None,
        payment_reference: str | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Record a failed payment.  The subscription state is unchanged."""
        now = _utc(now)
        fingerprint, begun = await self._begin(
            "payment_failure",
            {"amount": amount, "currency": currency, "reason": failure_reason, "reference": payment_reference},
            idempotency_key,
            now,
            include_cancelled=True,
        )
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        result = await self._commit_transition(
            row,
            BillingAuditAction.PAYMENT_FAILED,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=quantize_money(amount) if amount is not None else None,
            metadata={"currency": currency, "failure_reason": failure_reason, "payment_reference": payment_reference},
        )
        self._notify(NotificationTemplate.PAYMENT_FAILED, subscription_id=row.id, reason=failure_reason)
        return result

    async def record_billing_event(
        self,
        event_type: str,
        *,
        amount: Decimal | None = None,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Record a provider fact (order approved, authorization, trial reminder)."""
        if event_type not in _BILLING_FACTS:
            raise BillingValidationError(f"Unsupported billing event type {event_type!r}")
        now = _utc(now)
        fingerprint, begun = await self._begin(
            event_type,
            {"amount": amount, **(metadata or {})},
            idempotency_key,
            now,
            include_cancelled=True,
        )
        if isinstance(begun, TransitionResult):
            return begun
        row = begun

        result = await self._commit_transition(
            row,
            event_type,
            occurred_at=now,
            fingerprint=fingerprint,
            idempotency_key=idempotency_key,
            amount=quantize_money(amount) if amount is not None else None,
            metadata=metadata,
        )
        if event_type == BillingAuditAction.TRIAL_WILL_END:
            self._notify(
                NotificationTemplate.TRIAL_ENDING,
                subscription_id=row.id,
                trial_end=row.trial_end.isoformat() if row.trial_end else None,
            )
        return result
