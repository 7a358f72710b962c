"""Payment provider webhook ingestion.

``POST /webhooks/{provider}`` is the single entry point for provider
deliveries.  It bypasses tenant headers; authenticity comes from the
provider signature.  Verified deliveries are always acknowledged with 200
(including failures, which are reprocessed internally); unverifiable ones
get 400/401 and are not recorded.
"""

from __future__ import annotations

import logging

from billing_engine.models.events import WebhookResult
from fastapi import APIRouter, HTTPException, Request

from billing_api.dependencies import WebhookProcessorDep
from billing_api.services.provider_adapters import WebhookRejectedError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookResult)
async def receive_webhook(provider: str, request: Request, processor: WebhookProcessorDep) -> WebhookResult:
    body = await request.body()
    try:
        return await processor.handle(provider, body, request.headers)
    except WebhookRejectedError as exc:
        logger.warning("Rejected %s webhook: %s", provider, exc.reason)
        raise HTTPException(status_code=exc.status_code, detail=exc.reason) from exc
