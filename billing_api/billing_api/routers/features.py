"""Feature entitlement and override endpoints.

Overrides are tenant-level grants or restrictions that win over the plan
until they expire.  Changing them requires the ADMIN role.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Response

from billing_api.dependencies import LedgerDep
from billing_api.middleware.rbac import Role, require_role
from billing_api.schemas import FeatureOverrideRequest, FeatureOverrideResponse, FeatureResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/features", tags=["features"])


@router.get("/overrides", response_model=list[FeatureOverrideResponse])
async def list_overrides(ledger: LedgerDep) -> list[FeatureOverrideResponse]:
    """Return the tenant's unexpired overrides."""
    rows = await ledger.list_overrides()
    return [FeatureOverrideResponse.model_validate(row) for row in rows]


@router.get("/{feature}", response_model=FeatureResponse)
async def get_feature(feature: str, ledger: LedgerDep) -> FeatureResponse:
    """Return the effective value of *feature*; unknown features are disabled."""
    value = await ledger.is_feature_enabled(feature)
    return FeatureResponse(feature=feature, value=value, enabled=value is not False)


@router.put("/{feature_key}/override", response_model=FeatureOverrideResponse)
async def set_override(
    feature_key: str,
    body: FeatureOverrideRequest,
    ledger: LedgerDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> FeatureOverrideResponse:
    """Create or replace the override for *feature_key*."""
    row = await ledger.set_override(feature_key, body.value, expires_at=body.expires_at, reason=body.reason)
    return FeatureOverrideResponse.model_validate(row)


@router.delete("/{feature_key}/override", status_code=204)
async def remove_override(
    feature_key: str,
    ledger: LedgerDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> Response:
    await ledger.remove_override(feature_key)
    return Response(status_code=204)
