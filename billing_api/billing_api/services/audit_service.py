"""Billing audit trail service.

Wraps :class:`AuditEventRepository` with the well-known billing action
constants and the read operations the API exposes.  Lifecycle transitions
append through the repository directly so that the subscription row and
its audit event share one unit of work.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from billing_engine.state.repository import AuditEventRepository
from billing_engine.state.tables import AuditEventTable
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Action constants
# ---------------------------------------------------------------------------


class BillingAuditAction:
    """Well-known billing audit event types."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_PAUSED = "subscription_paused"
    SUBSCRIPTION_RESUMED = "subscription_resumed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    CANCEL_SCHEDULED = "cancel_scheduled"
    PLAN_CHANGED = "plan_changed"
    RENEWAL_CHARGED = "renewal_charged"
    TRIAL_EXPIRED = "trial_expired"
    TRIAL_WILL_END = "trial_will_end"
    TRIAL_REMINDER_SENT = "trial_expiration_reminder"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    ORDER_APPROVED = "order_approved"
    AUTHORIZATION_CREATED = "authorization_created"
    OVERRIDE_SET = "feature_override_set"
    OVERRIDE_REMOVED = "feature_override_removed"
    PROVIDER_EVENT_STALE = "provider_event_stale"
    PROVIDER_EVENT_IGNORED = "provider_event_ignored"
    PROVIDER_EVENT_FAILED = "provider_event_failed"
    ACTION_FAILED = "action_failed"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BillingAuditService:
    """Tenant-scoped audit reads and standalone audit writes.

    Parameters
    ----------
    session:
        The async database session for the current unit of work.
    tenant_id:
        Tenant whose chain is read or appended to.
    actor:
        Identity of the principal performing the action.  Defaults to
        ``"system"`` for internal operations.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        actor: str = "system",
    ) -> None:
        self._repo = AuditEventRepository(session, tenant_id)
        self._actor = actor

    async def log(
        self,
        action: str,
        *,
        subscription_id: str | None = None,
        amount: Decimal | None = None,
        occurred_at: datetime | None = None,
        idempotency_key: str | None = None,
        **kwargs: Any,
    ) -> str:
        """Record an audit event and return its id.

        Extra keyword arguments are stored as event metadata.
        """
        row = await self._repo.append(
            event_type=action,
            actor=self._actor,
            occurred_at=occurred_at or datetime.now(UTC),
            subscription_id=subscription_id,
            amount=amount,
            idempotency_key=idempotency_key,
            metadata=dict(kwargs) if kwargs else None,
        )
        return row.id

    async def for_subscription(
        self,
        subscription_id: str,
        *,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEventTable]:
        return await self._repo.list_for_subscription(subscription_id, event_type=event_type, limit=limit)

    async def query(
        self,
        *,
        event_type: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEventTable]:
        return await self._repo.query(event_type=event_type, since=since, limit=limit, offset=offset)

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Verify the tenant's hash chain.  See :meth:`AuditEventRepository.verify_chain`."""
        is_valid, checked = await self._repo.verify_chain(limit=limit)
        if not is_valid:
            logger.error("Audit chain verification failed after %d entries", checked)
        return is_valid, checked
