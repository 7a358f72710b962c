"""Tenant-scoped batch processor for scheduled subscription actions.

Each run scans due subscriptions across all tenants and applies their
pending action (renewal, period-end cancellation, trial expiration)
through the lifecycle manager.  Any number of runs may overlap, on one
host or many:

* A subscription is claimed with a lease in ``processing_locks`` taken by
  a single conditional upsert.  A live lease held by another worker
  counts as ``skipped_locked``.
* The action runs in its own transaction with the idempotency key
  ``"<tenant>:<subscription>:<period end date>"`` and re-checks that the
  subscription is still due for the scanned period.  A worker that
  claims a subscription right after another finished sees it as
  ``not_due``.
* A failure is isolated to its subscription.  The lease is left to
  expire and ``attempt_count`` grows; at ``batch_max_attempts`` (or on a
  permanent business error) the pending action is marked ``failed`` for
  manual review.

A separate pass, :meth:`TenantBatchProcessor.send_trial_reminders`, sends
one ``trial_ending`` reminder per subscription and day remaining once the
trial is within ``trial_reminder_days`` of its end.  The audit log keys
each reminder, so overlapping passes send it once.

The scan session is closed before any subscription is processed, so no
transaction spans more than one subscription.
"""

from __future__ import annotations

import logging
import math
import os
import socket
from datetime import UTC, datetime, timedelta

from billing_engine.errors import BillingError, TransientBillingError
from billing_engine.models.subscription import ActionStatus, PendingAction, SubscriptionStatus, TransitionResult
from billing_engine.plans.catalog import PlanCatalog
from billing_engine.retry import async_retry_with_backoff
from billing_engine.state.database import session_scope
from billing_engine.state.repository import BillingScanRepository, ProcessingLockRepository, SubscriptionRepository
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.services.audit_service import BillingAuditAction, BillingAuditService
from billing_api.services.lifecycle_service import SubscriptionLifecycleManager
from billing_api.services.notification_service import Notification, NotificationService

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class DueSubscription(BaseModel):
    """A subscription picked up by the scan, detached from its session."""

    tenant_id: str
    subscription_id: str
    pending_action: PendingAction
    next_action_at: datetime


class BatchRunReport(BaseModel):
    """Aggregate outcome of one batch run."""

    worker_id: str
    started_at: datetime
    finished_at: datetime | None = None
    scanned: int = 0
    processed: int = 0
    skipped_locked: int = 0
    not_due: int = 0
    failed: int = 0


class TrialReminderReport(BaseModel):
    """Aggregate outcome of one trial-reminder pass."""

    scanned: int = 0
    sent: int = 0
    already_sent: int = 0
    failed: int = 0


class TenantBatchProcessor:
    """Apply due pending actions across tenants under per-subscription leases.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions.
    catalog:
        Plan catalog handed to the lifecycle manager.
    settings:
        Page size, lease length, attempt cap and retry policy.
    notifier:
        Receives notifications after each action commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        settings: APISettings,
        notifier: NotificationService,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._settings = settings
        self._notifier = notifier
        self._retry_config = settings.retry_config()

    async def run(self, *, now: datetime | None = None, worker_id: str | None = None) -> BatchRunReport:
        """Process every subscription whose pending action is due at *now*."""
        now = now or datetime.now(UTC)
        worker_id = worker_id or default_worker_id()
        report = BatchRunReport(worker_id=worker_id, started_at=datetime.now(UTC))

        after: tuple[datetime, str] | None = None
        for _page in range(self._settings.batch_max_pages):
            due = await self._scan_page(now, after)
            if not due:
                break
            report.scanned += len(due)
            for item in due:
                try:
                    await self._process_one(item, now, worker_id, report)
                except Exception:
                    # Even failure bookkeeping failed; the lease expires on its own.
                    report.failed += 1
                    logger.exception(
                        "Batch bookkeeping failed for tenant=%s subscription=%s",
                        item.tenant_id,
                        item.subscription_id,
                    )
            last = due[-1]
            after = (last.next_action_at, last.subscription_id)
            if len(due) < self._settings.batch_page_size:
                break
        else:
            logger.warning("Batch run %s stopped after %d pages", worker_id, self._settings.batch_max_pages)

        report.finished_at = datetime.now(UTC)
        logger.info(
            "Batch run %s finished: scanned=%d processed=%d skipped_locked=%d not_due=%d failed=%d",
            worker_id,
            report.scanned,
            report.processed,
            report.skipped_locked,
            report.not_due,
            report.failed,
        )
        return report

    async def _scan_page(self, now: datetime, after: tuple[datetime, str] | None) -> list[DueSubscription]:
        async with session_scope(self._session_factory) as session:
            rows = await BillingScanRepository(session).list_due_subscriptions(
                now,
                limit=self._settings.batch_page_size,
                after=after,
            )
            return [
                DueSubscription(
                    tenant_id=row.tenant_id,
                    subscription_id=row.id,
                    pending_action=PendingAction(row.pending_action),
                    next_action_at=row.next_action_at,
                )
                for row in rows
            ]

    async def _process_one(self, item: DueSubscription, now: datetime, worker_id: str, report: BatchRunReport) -> None:
        async with session_scope(self._session_factory, item.tenant_id) as session:
            attempts = await ProcessingLockRepository(session, item.tenant_id).try_acquire(
                item.subscription_id,
                locked_by=worker_id,
                now=now,
                lease_seconds=self._settings.batch_lease_seconds,
            )
        if attempts is None:
            report.skipped_locked += 1
            return

        try:
            result, notifications = await async_retry_with_backoff(
                lambda: self._apply(item, now, worker_id),
                self._retry_config,
                operation=f"{item.pending_action.value} {item.tenant_id}:{item.subscription_id}",
            )
        except Exception as exc:
            report.failed += 1
            await self._record_failure(item, exc, now, worker_id)
            return

        if result is None:
            report.not_due += 1
            return
        report.processed += 1
        self._notifier.send_all(notifications)

    async def _apply(
        self,
        item: DueSubscription,
        now: datetime,
        worker_id: str,
    ) -> tuple[TransitionResult | None, list[Notification]]:
        """Run the pending action and release the lease in one transaction."""
        async with session_scope(self._session_factory, item.tenant_id) as session:
            locks = ProcessingLockRepository(session, item.tenant_id)
            row = await SubscriptionRepository(session, item.tenant_id).get(item.subscription_id, for_update=True)

            still_due = (
                row is not None
                and row.status != SubscriptionStatus.CANCELLED.value
                and row.action_status == ActionStatus.PENDING.value
                and row.pending_action == item.pending_action.value
                and row.next_action_at is not None
                and row.next_action_at == item.next_action_at
                and row.next_action_at <= now
            )
            if not still_due:
                logger.info(
                    "Subscription %s no longer due for %s; skipping",
                    item.subscription_id,
                    item.pending_action.value,
                )
                await locks.release(item.subscription_id)
                return None, []

            manager = SubscriptionLifecycleManager(
                session,
                item.tenant_id,
                self._catalog,
                actor=f"system:batch:{worker_id}",
            )
            key = f"{item.tenant_id}:{item.subscription_id}:{row.current_period_end:%Y-%m-%d}"
            if item.pending_action == PendingAction.RENEWAL:
                result = await manager.renew(idempotency_key=key, now=now)
            elif item.pending_action == PendingAction.CANCELLATION:
                result = await manager.complete_scheduled_cancellation(idempotency_key=key, now=now)
            else:
                result = await manager.expire_trial(idempotency_key=key, now=now)

            await locks.release(item.subscription_id)
            notifications = manager.drain_notifications()
        return result, notifications

    async def _record_failure(self, item: DueSubscription, exc: Exception, now: datetime, worker_id: str) -> None:
        permanent = isinstance(exc, BillingError) and not isinstance(exc, TransientBillingError)
        error = exc.detail if isinstance(exc, BillingError) else f"{type(exc).__name__}: {exc}"

        async with session_scope(self._session_factory, item.tenant_id) as session:
            locks = ProcessingLockRepository(session, item.tenant_id)
            attempts = await locks.record_failure(item.subscription_id, error)
            if not permanent and attempts < self._settings.batch_max_attempts:
                logger.warning(
                    "Batch %s failed for tenant=%s subscription=%s (attempt %d/%d): %s",
                    item.pending_action.value,
                    item.tenant_id,
                    item.subscription_id,
                    attempts,
                    self._settings.batch_max_attempts,
                    error,
                )
                return

            subscriptions = SubscriptionRepository(session, item.tenant_id)
            row = await subscriptions.get(item.subscription_id, for_update=True)
            if row is not None:
                row.action_status = ActionStatus.FAILED.value
                await subscriptions.save(row)
            await BillingAuditService(session, tenant_id=item.tenant_id, actor=f"system:batch:{worker_id}").log(
                BillingAuditAction.ACTION_FAILED,
                subscription_id=item.subscription_id,
                occurred_at=now,
                pending_action=item.pending_action.value,
                attempts=attempts,
                error=error[:500],
            )
            await locks.release(item.subscription_id)

        logger.error(
            "Batch %s for tenant=%s subscription=%s marked failed after %d attempt(s): %s",
            item.pending_action.value,
            item.tenant_id,
            item.subscription_id,
            attempts,
            error,
        )

    async def send_trial_reminders(self, *, now: datetime | None = None) -> TrialReminderReport:
        """Remind tenants whose trial ends within ``trial_reminder_days``.

        ``days_remaining`` is the number of started days until ``trial_end``,
        so a trial ending in 36 hours gets its "2 days" reminder.
        """
        now = now or datetime.now(UTC)
        until = now + timedelta(days=self._settings.trial_reminder_days)
        report = TrialReminderReport()

        after: tuple[datetime, str] | None = None
        for _page in range(self._settings.batch_max_pages):
            async with session_scope(self._session_factory) as session:
                rows = await BillingScanRepository(session).list_expiring_trials(
                    now,
                    until,
                    limit=self._settings.batch_page_size,
                    after=after,
                )
                trials = [(row.tenant_id, row.id, row.trial_end) for row in rows]
            if not trials:
                break
            report.scanned += len(trials)

            for tenant_id, subscription_id, trial_end in trials:
                days_remaining = math.ceil((trial_end - now).total_seconds() / 86400)
                try:
                    async with session_scope(self._session_factory, tenant_id) as session:
                        manager = SubscriptionLifecycleManager(session, tenant_id, self._catalog, actor="system:batch")
                        result = await manager.send_trial_reminder(
                            subscription_id,
                            days_remaining=days_remaining,
                            now=now,
                        )
                        notifications = manager.drain_notifications()
                except Exception:
                    report.failed += 1
                    logger.exception("Trial reminder failed for tenant=%s subscription=%s", tenant_id, subscription_id)
                    continue
                if result is None:
                    report.already_sent += 1
                    continue
                report.sent += 1
                self._notifier.send_all(notifications)

            after = (trials[-1][2], trials[-1][1])
            if len(trials) < self._settings.batch_page_size:
                break

        logger.info(
            "Trial reminders: scanned=%d sent=%d already_sent=%d failed=%d",
            report.scanned,
            report.sent,
            report.already_sent,
            report.failed,
        )
        return report

    async def purge_stale_locks(self, *, now: datetime | None = None) -> int:
        """Delete leases that expired more than ``lock_retention_days`` ago."""
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(days=self._settings.lock_retention_days)
        async with session_scope(self._session_factory) as session:
            purged = await BillingScanRepository(session).purge_expired_locks(cutoff)
        logger.info("Purged %d processing locks expired before %s", purged, cutoff.isoformat())
        return purged
