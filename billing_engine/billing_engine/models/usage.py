"""Usage metering types and ledger results."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

# Sentinel limit meaning "no cap".  Kept numeric so that arithmetic on limits
# never has to special-case ``None``.
UNLIMITED = -1

FeatureValue = bool | str


class UsageType(str, Enum):
    """Metered actions a tenant performs."""

    RECEIPTS = "receipts"
    INVOICES = "invoices"
    STORAGE_MB = "storage_mb"
    USERS = "users"

    @property
    def limit_key(self) -> str:
        """Name of the plan limit that caps this usage type."""
        return _LIMIT_KEYS[self]


_LIMIT_KEYS: dict[UsageType, str] = {
    UsageType.RECEIPTS: "receipts_per_month",
    UsageType.INVOICES: "invoices_per_month",
    UsageType.STORAGE_MB: "storage_mb",
    UsageType.USERS: "users_max",
}


class UsageStatus(BaseModel):
    """Result of ``check_usage``."""

    usage_type: UsageType
    current: int = Field(..., ge=0)
    limit: int = Field(..., description="Effective limit, -1 when unlimited.")
    remaining: int = Field(..., description="Units left this period, -1 when unlimited.")
    unlimited: bool


class UsageDecision(BaseModel):
    """Result of ``can_perform``: ``allowed`` or denied with a reason."""

    allowed: bool
    reason: str | None = None
    usage_type: UsageType
    requested: int
    current: int
    limit: int
