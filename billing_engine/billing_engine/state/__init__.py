"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from billing_engine.state.database import get_engine, make_session_factory, session_scope, set_tenant_context
from billing_engine.state.repository import (
    AuditEventRepository,
    BillingScanRepository,
    FeatureOverrideRepository,
    ProcessingLockRepository,
    ProviderEventRepository,
    SubscriptionRepository,
    UsageCounterRepository,
)

__all__ = [
    "AuditEventRepository",
    "BillingScanRepository",
    "FeatureOverrideRepository",
    "ProcessingLockRepository",
    "ProviderEventRepository",
    "SubscriptionRepository",
    "UsageCounterRepository",
    "get_engine",
    "make_session_factory",
    "session_scope",
    "set_tenant_context",
]
