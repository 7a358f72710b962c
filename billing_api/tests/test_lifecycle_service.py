"""Tests for the subscription lifecycle manager.

Every scenario runs against a real SQLite file so the audit chain,
idempotency lookups and the one-open-subscription index are exercised.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from billing_engine.errors import (
    BillingValidationError,
    IdempotencyConflictError,
    InvalidTransitionError,
    PlanNotFoundError,
    StaleEventError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
)
from billing_engine.models.subscription import CancelMode, PendingAction, SubscriptionStatus
from billing_engine.state.database import session_scope
from billing_engine.state.repository import AuditEventRepository, SubscriptionRepository

from billing_api.services.audit_service import BillingAuditAction
from billing_api.services.lifecycle_service import SubscriptionLifecycleManager, request_fingerprint
from billing_api.services.notification_service import NotificationTemplate
from conftest import TENANT

_JAN_1 = datetime(2026, 1, 1, tzinfo=UTC)
_JAN_11 = datetime(2026, 1, 11, tzinfo=UTC)
_JAN_16 = datetime(2026, 1, 16, tzinfo=UTC)
_JAN_31 = datetime(2026, 1, 31, tzinfo=UTC)
_FEB_1 = datetime(2026, 2, 1, tzinfo=UTC)


def _manager(session, catalog, tenant_id: str = TENANT) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(session, tenant_id, catalog, actor="user:alice")


async def _audit_types(session_factory, tenant_id: str = TENANT) -> list[str]:
    """Return the tenant's audit event types, oldest first."""
    async with session_scope(session_factory, tenant_id) as session:
        events = await AuditEventRepository(session, tenant_id).query(limit=100)
    return [e.event_type for e in reversed(events)]


class TestCreateSubscription:
    """Subscription creation with and without a trial."""

    @pytest.mark.asyncio
    async def test_create_paid_plan_starts_active(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).create_subscription("basic", now=_JAN_1)

        sub = result.subscription
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.amount == Decimal("30.00")
        assert sub.current_period_start == _JAN_1
        assert sub.current_period_end == _FEB_1
        assert sub.pending_action == PendingAction.RENEWAL
        assert sub.next_action_at == _FEB_1
        assert result.amount == Decimal("30.00")
        assert result.event_type == BillingAuditAction.SUBSCRIPTION_CREATED

    @pytest.mark.asyncio
    async def test_create_with_trial(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).create_subscription("trial", now=_JAN_1)

        sub = result.subscription
        assert sub.status == SubscriptionStatus.TRIALING
        assert sub.trial_end == _JAN_1 + timedelta(days=14)
        assert sub.pending_action == PendingAction.TRIAL_EXPIRATION
        assert result.amount is None

    @pytest.mark.asyncio
    async def test_explicit_zero_trial_days_skips_trial(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).create_subscription("trial", trial_days=0, now=_JAN_1)
        assert result.subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_yearly_cycle(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).create_subscription("starter", "yearly", now=_JAN_1)
        assert result.subscription.amount == Decimal("200.00")
        assert result.subscription.current_period_end == datetime(2027, 1, 1, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_unknown_plan(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(PlanNotFoundError):
                await _manager(session, catalog).create_subscription("platinum", now=_JAN_1)

    @pytest.mark.asyncio
    async def test_second_open_subscription_rejected(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(SubscriptionExistsError):
                await _manager(session, catalog).create_subscription("starter", now=_JAN_11)

    @pytest.mark.asyncio
    async def test_create_after_cancellation_allowed(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(status="cancelled", cancelled_at=_JAN_11, pending_action=None, next_action_at=None)
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).create_subscription("starter", now=_JAN_16)
        assert result.subscription.status == SubscriptionStatus.ACTIVE


class TestIdempotency:
    """Replays return the stored outcome; conflicting payloads are rejected."""

    @pytest.mark.asyncio
    async def test_same_key_same_payload_replays(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            first = await _manager(session, catalog).create_subscription("basic", idempotency_key="k1", now=_JAN_1)
        async with session_scope(session_factory, TENANT) as session:
            second = await _manager(session, catalog).create_subscription("basic", idempotency_key="k1", now=_JAN_1)

        assert second.replayed is True
        assert second.subscription.id == first.subscription.id
        assert second.audit_event_id == first.audit_event_id
        assert await _audit_types(session_factory) == ["subscription_created"]

    @pytest.mark.asyncio
    async def test_same_key_different_payload_conflicts(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            await _manager(session, catalog).create_subscription("basic", idempotency_key="k1", now=_JAN_1)
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(IdempotencyConflictError):
                await _manager(session, catalog).create_subscription("starter", idempotency_key="k1", now=_JAN_1)

    @pytest.mark.asyncio
    async def test_replayed_transition_has_no_new_effects(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            first = await _manager(session, catalog).pause(idempotency_key="pause-1", now=_JAN_16)
        async with session_scope(session_factory, TENANT) as session:
            again = await _manager(session, catalog).pause(idempotency_key="pause-1", now=_JAN_16)

        assert again.replayed is True
        assert again.subscription.credit_balance == first.subscription.credit_balance
        assert (await _audit_types(session_factory)).count("subscription_paused") == 1

    def test_fingerprint_is_order_independent(self) -> None:
        assert request_fingerprint("x", {"a": 1, "b": 2}) == request_fingerprint("x", {"b": 2, "a": 1})
        assert request_fingerprint("x", {"a": 1}) != request_fingerprint("y", {"a": 1})


class TestCancellation:
    """Immediate and period-end cancellation."""

    @pytest.mark.asyncio
    async def test_immediate_cancel(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            result = await manager.cancel(CancelMode.IMMEDIATE, reason="too expensive", now=_JAN_16)
            notifications = manager.drain_notifications()

        sub = result.subscription
        assert sub.status == SubscriptionStatus.CANCELLED
        assert sub.cancelled_at == _JAN_16
        assert sub.pending_action is None
        assert sub.next_charge_date is None
        assert [n.template for n in notifications] == [NotificationTemplate.SUBSCRIPTION_CANCELLED]

    @pytest.mark.asyncio
    async def test_period_end_cancel_then_completion(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            scheduled = await _manager(session, catalog).cancel(CancelMode.PERIOD_END, now=_JAN_16)

        sub = scheduled.subscription
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.cancel_at_period_end is True
        assert sub.pending_action == PendingAction.CANCELLATION
        assert sub.next_action_at == _JAN_31
        assert scheduled.event_type == BillingAuditAction.CANCEL_SCHEDULED

        async with session_scope(session_factory, TENANT) as session:
            done = await _manager(session, catalog).complete_scheduled_cancellation(now=_JAN_31)

        assert done.subscription.status == SubscriptionStatus.CANCELLED
        assert done.amount is None
        assert await _audit_types(session_factory) == [
            "subscription_created",
            "cancel_scheduled",
            "subscription_cancelled",
        ]

    @pytest.mark.asyncio
    async def test_double_schedule_rejected(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            await _manager(session, catalog).cancel(CancelMode.PERIOD_END, now=_JAN_16)
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(InvalidTransitionError):
                await _manager(session, catalog).cancel(CancelMode.PERIOD_END, now=_JAN_16 + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_period_end_after_period_cancels_now(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(status="paused", pending_action=None, next_action_at=None)
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).cancel(CancelMode.PERIOD_END, now=_FEB_1)
        assert result.subscription.status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_is_terminal(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            await _manager(session, catalog).cancel(now=_JAN_16)
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            with pytest.raises(InvalidTransitionError):
                await manager.cancel(now=_JAN_31)
            with pytest.raises(InvalidTransitionError):
                await manager.resume(now=_JAN_31)

    @pytest.mark.asyncio
    async def test_no_subscription(self, session_factory, catalog) -> None:
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(SubscriptionNotFoundError):
                await _manager(session, catalog).cancel(now=_JAN_16)


class TestPlanChange:
    """Mid-period upgrades and downgrades."""

    @pytest.mark.asyncio
    async def test_upgrade_charges_prorated_difference(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(plan_id="starter", amount=Decimal("20.00"))
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).change_plan("growth", now=_JAN_11)

        assert result.amount == Decimal("13.34")
        assert result.subscription.plan_id == "growth"
        assert result.subscription.amount == Decimal("40.00")
        assert result.subscription.credit_balance == Decimal("0.00")
        assert result.subscription.current_period_end == _JAN_31

    @pytest.mark.asyncio
    async def test_downgrade_adds_surplus_credit(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(plan_id="growth", amount=Decimal("40.00"))
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).change_plan("starter", now=_JAN_11)

        assert result.amount == Decimal("0.00")
        assert result.subscription.amount == Decimal("20.00")
        assert result.subscription.credit_balance == Decimal("13.34")

    @pytest.mark.asyncio
    async def test_same_plan_rejected(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(BillingValidationError):
                await _manager(session, catalog).change_plan("basic", now=_JAN_11)

    @pytest.mark.asyncio
    async def test_paused_subscription_cannot_change_plan(
        self, session_factory, catalog, seed_subscription
    ) -> None:
        await seed_subscription(status="paused", pending_action=None, next_action_at=None)
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(InvalidTransitionError):
                await _manager(session, catalog).change_plan("growth", now=_JAN_11)

    @pytest.mark.asyncio
    async def test_preview_does_not_mutate(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(plan_id="starter", amount=Decimal("20.00"))
        async with session_scope(session_factory, TENANT) as session:
            preview = await _manager(session, catalog).preview_change("growth", now=_JAN_11)
        assert preview.immediate_charge == Decimal("13.34")
        assert await _audit_types(session_factory) == ["subscription_created"]


class TestPauseResume:
    """Pausing credits the unused period; resuming consumes the credit."""

    @pytest.mark.asyncio
    async def test_pause_then_resume(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            paused = await _manager(session, catalog).pause(now=_JAN_16)

        assert paused.subscription.status == SubscriptionStatus.PAUSED
        assert paused.amount == Decimal("15.00")
        assert paused.subscription.credit_balance == Decimal("15.00")
        assert paused.subscription.pending_action is None

        async with session_scope(session_factory, TENANT) as session:
            resumed = await _manager(session, catalog).resume(now=_FEB_1)

        sub = resumed.subscription
        assert sub.status == SubscriptionStatus.ACTIVE
        assert resumed.amount == Decimal("15.00")
        assert sub.credit_balance == Decimal("0.00")
        assert sub.current_period_start == _FEB_1
        assert sub.current_period_end == datetime(2026, 3, 1, tzinfo=UTC)
        assert sub.pending_action == PendingAction.RENEWAL

    @pytest.mark.asyncio
    async def test_resume_active_rejected(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(InvalidTransitionError):
                await _manager(session, catalog).resume(now=_JAN_16)

    @pytest.mark.asyncio
    async def test_resume_with_scheduled_cancellation_rejected(
        self, session_factory, catalog, seed_subscription
    ) -> None:
        sub_id = await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            await _manager(session, catalog).pause(now=datetime(2026, 1, 5, tzinfo=UTC))
        async with session_scope(session_factory, TENANT) as session:
            await _manager(session, catalog).cancel(CancelMode.PERIOD_END, now=datetime(2026, 1, 6, tzinfo=UTC))

        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(InvalidTransitionError):
                await _manager(session, catalog).resume(now=datetime(2026, 1, 10, tzinfo=UTC))

        async with session_scope(session_factory, TENANT) as session:
            sub = await SubscriptionRepository(session, TENANT).get(sub_id)
        assert sub.status == "paused"
        assert sub.cancel_at_period_end is True
        assert sub.pending_action == PendingAction.CANCELLATION.value
        assert sub.next_action_at == _JAN_31

    @pytest.mark.asyncio
    async def test_pause_trial_rejected(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(status="trialing", trial_end=_JAN_31, pending_action="trial_expiration")
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(InvalidTransitionError):
                await _manager(session, catalog).pause(now=_JAN_16)

    @pytest.mark.asyncio
    async def test_stale_event_rejected(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            await _manager(session, catalog).pause(now=_JAN_16)
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(StaleEventError):
                await _manager(session, catalog).resume(now=_JAN_11)


class TestScheduledActions:
    """Renewal and trial expiry, normally driven by the batch processor."""

    @pytest.mark.asyncio
    async def test_renew_rolls_period_and_charges(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).renew(now=_JAN_31)

        sub = result.subscription
        assert result.amount == Decimal("30.00")
        assert sub.current_period_start == _JAN_31
        assert sub.current_period_end == datetime(2026, 2, 28, tzinfo=UTC)
        assert sub.next_action_at == datetime(2026, 2, 28, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_renew_consumes_credit(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(credit_balance=Decimal("12.50"))
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).renew(now=_JAN_31)
        assert result.amount == Decimal("17.50")
        assert result.subscription.credit_balance == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_credit_larger_than_amount_carries_over(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(credit_balance=Decimal("45.00"))
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).renew(now=_JAN_31)
        assert result.amount == Decimal("0.00")
        assert result.subscription.credit_balance == Decimal("15.00")

    @pytest.mark.asyncio
    async def test_expire_trial(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(status="trialing", trial_end=_JAN_31, pending_action="trial_expiration")
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            with pytest.raises(BillingValidationError):
                await manager.expire_trial(now=_JAN_16)
            result = await manager.expire_trial(now=_JAN_31)
            notifications = manager.drain_notifications()

        assert result.subscription.status == SubscriptionStatus.CANCELLED
        assert result.event_type == BillingAuditAction.TRIAL_EXPIRED
        assert [n.template for n in notifications] == [NotificationTemplate.TRIAL_ENDED]

    @pytest.mark.asyncio
    async def test_trial_reminder_recorded_once(self, session_factory, catalog, seed_subscription) -> None:
        sub_id = await seed_subscription(status="trialing", trial_end=_JAN_31, pending_action="trial_expiration")
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            first = await manager.send_trial_reminder(sub_id, days_remaining=3, now=datetime(2026, 1, 28, tzinfo=UTC))
            repeat = await manager.send_trial_reminder(sub_id, days_remaining=3, now=datetime(2026, 1, 28, tzinfo=UTC))
            notifications = manager.drain_notifications()

        assert first.event_type == BillingAuditAction.TRIAL_REMINDER_SENT
        assert first.subscription.status == SubscriptionStatus.TRIALING
        assert repeat is None
        assert [n.template for n in notifications] == [NotificationTemplate.TRIAL_ENDING]
        assert notifications[0].context["days_remaining"] == 3

    @pytest.mark.asyncio
    async def test_no_trial_reminder_after_activation(self, session_factory, catalog, seed_subscription) -> None:
        sub_id = await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            assert await manager.send_trial_reminder(sub_id, days_remaining=1, now=_JAN_16) is None
            assert manager.drain_notifications() == []


class TestProviderFacts:
    """Payments and informational provider events."""

    @pytest.mark.asyncio
    async def test_payment_activates_trial(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription(status="trialing", trial_end=_JAN_31, pending_action="trial_expiration")
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            result = await manager.record_payment(amount=Decimal("30"), currency="usd", now=_JAN_16)
            notifications = manager.drain_notifications()

        sub = result.subscription
        assert result.event_type == BillingAuditAction.SUBSCRIPTION_ACTIVATED
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.current_period_start == _JAN_16
        assert sub.current_period_end == datetime(2026, 2, 16, tzinfo=UTC)
        assert sub.pending_action == PendingAction.RENEWAL
        assert [n.template for n in notifications] == [NotificationTemplate.PAYMENT_CONFIRMED]

    @pytest.mark.asyncio
    async def test_payment_on_active_is_recorded(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).record_payment(amount=Decimal("30"), now=_JAN_16)
        assert result.event_type == BillingAuditAction.PAYMENT_SUCCEEDED
        assert result.amount == Decimal("30.00")
        assert result.subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_payment_failure_leaves_state(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            result = await manager.record_payment_failure(
                amount=Decimal("30"), failure_reason="card_declined", now=_JAN_16
            )
            notifications = manager.drain_notifications()
        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert [n.template for n in notifications] == [NotificationTemplate.PAYMENT_FAILED]

    @pytest.mark.asyncio
    async def test_billing_fact_recorded(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            result = await _manager(session, catalog).record_billing_event(
                BillingAuditAction.ORDER_APPROVED,
                metadata={"order_id": "O-1"},
                now=_JAN_16,
            )
        assert result.event_type == "order_approved"
        assert "order_approved" in await _audit_types(session_factory)

    @pytest.mark.asyncio
    async def test_unsupported_fact_rejected(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            with pytest.raises(BillingValidationError):
                await _manager(session, catalog).record_billing_event("plan_changed", now=_JAN_16)


class TestReads:
    @pytest.mark.asyncio
    async def test_get_current_and_trail(self, session_factory, catalog, seed_subscription) -> None:
        sub_id = await seed_subscription()
        async with session_scope(session_factory, TENANT) as session:
            manager = _manager(session, catalog)
            await manager.pause(now=_JAN_16)
            current = await manager.get_current()
            trail = await manager.audit_trail()

        assert current.id == sub_id
        assert current.status == SubscriptionStatus.PAUSED
        assert [e.event_type for e in trail] == ["subscription_created", "subscription_paused"]

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, session_factory, catalog, seed_subscription) -> None:
        await seed_subscription()
        async with session_scope(session_factory, "tenant-b") as session:
            with pytest.raises(SubscriptionNotFoundError):
                await _manager(session, catalog, tenant_id="tenant-b").get_current()
        async with session_scope(session_factory, TENANT) as session:
            assert await SubscriptionRepository(session, TENANT).get_open() is not None
