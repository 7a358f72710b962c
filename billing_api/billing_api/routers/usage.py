"""Usage metering endpoints.

Other services check a usage action before performing it and record it
afterwards.  Reads are open to any role of the tenant.
"""

from __future__ import annotations

import logging

from billing_engine.models.usage import UsageDecision, UsageStatus, UsageType
from fastapi import APIRouter, HTTPException

from billing_api.dependencies import LedgerDep
from billing_api.schemas import UsageAmountRequest, UsageIncrementResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/usage", tags=["usage"])


@router.get("/{usage_type}", response_model=UsageStatus)
async def get_usage(usage_type: UsageType, ledger: LedgerDep) -> UsageStatus:
    """Return current usage, the effective limit and the remaining allowance."""
    return await ledger.check_usage(usage_type)


@router.post("/{usage_type}/check", response_model=UsageDecision)
async def check_usage(usage_type: UsageType, body: UsageAmountRequest, ledger: LedgerDep) -> UsageDecision:
    """Return whether ``amount`` more units fit under the limit.  Never mutates."""
    return await ledger.can_perform(usage_type, body.amount)


@router.post("/{usage_type}/increment", response_model=UsageIncrementResponse)
async def increment_usage(
    usage_type: UsageType,
    body: UsageAmountRequest,
    ledger: LedgerDep,
) -> UsageIncrementResponse:
    """Record ``amount`` units of usage.

    The limit is checked first; a request that would exceed it is rejected
    with 403 and nothing is recorded.
    """
    decision = await ledger.can_perform(usage_type, body.amount)
    if not decision.allowed:
        raise HTTPException(
            status_code=403,
            detail={
                "reason": decision.reason,
                "usage_type": usage_type.value,
                "current": decision.current,
                "limit": decision.limit,
            },
        )
    current = await ledger.increment_usage(usage_type, body.amount)
    return UsageIncrementResponse(usage_type=usage_type.value, current=current)
