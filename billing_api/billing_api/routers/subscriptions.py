"""Subscription lifecycle endpoints.

Every mutation requires the ADMIN role and an ``Idempotency-Key`` header.
Retrying a request with the same key and body returns the original
outcome; reusing a key for a different request is rejected with 409.
Notifications are handed to the notifier only after the transaction
commits.
"""

from __future__ import annotations

import logging
from typing import Annotated

from billing_engine.models.subscription import SubscriptionSnapshot, TransitionResult
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.dependencies import (
    LifecycleDep,
    NotifierDep,
    SessionDep,
    SummaryDep,
    TenantDep,
)
from billing_api.middleware.rbac import Role, require_role
from billing_api.schemas import (
    AuditEventResponse,
    AuditVerifyResponse,
    CancelRequest,
    ChangePlanRequest,
    CreateSubscriptionRequest,
    ProrationPreviewRequest,
    ProrationPreviewResponse,
)
from billing_api.services.audit_service import BillingAuditService
from billing_api.services.lifecycle_service import SubscriptionLifecycleManager
from billing_api.services.notification_service import NotificationService
from billing_api.services.summary_service import BillingSummary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])

_MAX_KEY_LENGTH = 200


def require_idempotency_key(
    idempotency_key: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
) -> str:
    """Return the namespaced idempotency key or reject the request."""
    if not idempotency_key or not idempotency_key.strip():
        raise HTTPException(status_code=400, detail="Idempotency-Key header is required")
    if len(idempotency_key) > _MAX_KEY_LENGTH:
        raise HTTPException(status_code=400, detail=f"Idempotency-Key must be at most {_MAX_KEY_LENGTH} characters")
    return f"api:{idempotency_key.strip()}"


IdempotencyKeyDep = Annotated[str, Depends(require_idempotency_key)]
AdminDep = Annotated[Role, Depends(require_role(Role.ADMIN))]


async def _commit_and_notify(
    session: AsyncSession,
    manager: SubscriptionLifecycleManager,
    notifier: NotificationService,
) -> None:
    await session.commit()
    notifier.send_all(manager.drain_notifications())


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("", response_model=SubscriptionSnapshot)
async def get_subscription(manager: LifecycleDep) -> SubscriptionSnapshot:
    """Return the open subscription, else the most recent cancelled one."""
    return await manager.get_current()


@router.get("/summary", response_model=BillingSummary)
async def get_summary(summary: SummaryDep) -> BillingSummary:
    """Return the dashboard view: plan, entitlements and this period's usage."""
    return await summary.summarize()


@router.post("/proration-preview", response_model=ProrationPreviewResponse)
async def proration_preview(body: ProrationPreviewRequest, manager: LifecycleDep) -> ProrationPreviewResponse:
    """Quote a plan change without applying it."""
    current = await manager.get_current()
    result = await manager.preview_change(body.plan_id)
    return ProrationPreviewResponse(
        current_plan_id=current.plan_id,
        new_plan_id=body.plan_id,
        unused_days=result.unused_days,
        total_days=result.total_days,
        credit=result.credit,
        immediate_charge=result.immediate_charge,
        next_billing_amount=result.next_billing_amount,
    )


@router.get("/audit", response_model=list[AuditEventResponse])
async def get_audit_trail(
    manager: LifecycleDep,
    event_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[AuditEventResponse]:
    """Return the current subscription's audit events, oldest first."""
    rows = await manager.audit_trail(event_type=event_type, limit=limit)
    return [AuditEventResponse.model_validate(row) for row in rows]


@router.get("/audit/verify", response_model=AuditVerifyResponse)
async def verify_audit_chain(
    session: SessionDep,
    tenant_id: TenantDep,
    _role: AdminDep,
    limit: int = Query(default=1000, ge=1, le=100_000),
) -> AuditVerifyResponse:
    """Recompute the tenant's audit hash chain."""
    valid, checked = await BillingAuditService(session, tenant_id=tenant_id).verify_chain(limit=limit)
    return AuditVerifyResponse(valid=valid, entries_checked=checked)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@router.post("", response_model=TransitionResult, status_code=201)
async def create_subscription(
    body: CreateSubscriptionRequest,
    session: SessionDep,
    manager: LifecycleDep,
    notifier: NotifierDep,
    idempotency_key: IdempotencyKeyDep,
    _role: AdminDep,
) -> TransitionResult:
    result = await manager.create_subscription(
        body.plan_id,
        body.billing_cycle,
        trial_days=body.trial_days,
        provider=body.provider,
        provider_customer_id=body.provider_customer_id,
        provider_subscription_id=body.provider_subscription_id,
        idempotency_key=idempotency_key,
    )
    await _commit_and_notify(session, manager, notifier)
    return result


@router.post("/change-plan", response_model=TransitionResult)
async def change_plan(
    body: ChangePlanRequest,
    session: SessionDep,
    manager: LifecycleDep,
    notifier: NotifierDep,
    idempotency_key: IdempotencyKeyDep,
    _role: AdminDep,
) -> TransitionResult:
    """Switch plans mid-period; the response carries the prorated charge."""
    result = await manager.change_plan(body.plan_id, idempotency_key=idempotency_key)
    await _commit_and_notify(session, manager, notifier)
    return result


@router.post("/pause", response_model=TransitionResult)
async def pause_subscription(
    session: SessionDep,
    manager: LifecycleDep,
    notifier: NotifierDep,
    idempotency_key: IdempotencyKeyDep,
    _role: AdminDep,
) -> TransitionResult:
    result = await manager.pause(idempotency_key=idempotency_key)
    await _commit_and_notify(session, manager, notifier)
    return result


@router.post("/resume", response_model=TransitionResult)
async def resume_subscription(
    session: SessionDep,
    manager: LifecycleDep,
    notifier: NotifierDep,
    idempotency_key: IdempotencyKeyDep,
    _role: AdminDep,
) -> TransitionResult:
    result = await manager.resume(idempotency_key=idempotency_key)
    await _commit_and_notify(session, manager, notifier)
    return result


@router.post("/cancel", response_model=TransitionResult)
async def cancel_subscription(
    body: CancelRequest,
    session: SessionDep,
    manager: LifecycleDep,
    notifier: NotifierDep,
    idempotency_key: IdempotencyKeyDep,
    _role: AdminDep,
) -> TransitionResult:
    """Cancel now or at the end of the current period (the default)."""
    result = await manager.cancel(body.mode, reason=body.reason, idempotency_key=idempotency_key)
    await _commit_and_notify(session, manager, notifier)
    return result
