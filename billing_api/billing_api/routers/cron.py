"""Scheduled job triggers.

The scheduler itself lives outside this service; it calls these endpoints
with ``Authorization: Bearer <cron_secret>``.  Overlapping calls are safe:
the batch processor coordinates through processing leases.
"""

from __future__ import annotations

import hmac
import logging
from collections import Counter
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException

from billing_api.dependencies import BatchProcessorDep, SettingsDep, WebhookProcessorDep
from billing_api.schemas import LockCleanupResponse, WebhookReprocessResponse
from billing_api.services.batch_processor import BatchRunReport, TrialReminderReport

logger = logging.getLogger(__name__)


def verify_cron_secret(
    settings: SettingsDep,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request unless it carries the configured bearer secret."""
    secret = settings.cron_secret.get_secret_value()
    if not secret:
        raise HTTPException(status_code=503, detail="Cron triggers are not configured")

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip().encode(), secret.encode()):
        logger.warning("Cron trigger rejected: invalid credentials")
        raise HTTPException(status_code=401, detail="Invalid cron credentials")


router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])


@router.post("/billing-run", response_model=BatchRunReport)
async def billing_run(processor: BatchProcessorDep) -> BatchRunReport:
    """Apply every due renewal, scheduled cancellation and trial expiration."""
    return await processor.run()


@router.post("/trial-reminders", response_model=TrialReminderReport)
async def trial_reminders(processor: BatchProcessorDep) -> TrialReminderReport:
    """Send reminders for trials ending soon."""
    return await processor.send_trial_reminders()


@router.post("/reprocess-webhooks", response_model=WebhookReprocessResponse)
async def reprocess_webhooks(processor: WebhookProcessorDep) -> WebhookReprocessResponse:
    """Retry provider events whose handlers failed."""
    results = await processor.reprocess_failed()
    counts = Counter(result.status.value for result in results)
    return WebhookReprocessResponse(attempted=len(results), by_status=dict(counts))


@router.post("/lock-cleanup", response_model=LockCleanupResponse)
async def lock_cleanup(processor: BatchProcessorDep) -> LockCleanupResponse:
    """Delete long-expired processing leases."""
    return LockCleanupResponse(purged=await processor.purge_stale_locks())
