"""FastAPI dependency injection for settings, sessions and billing services."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from billing_engine.plans.catalog import FreeTierDefaults, PlanCatalog, default_catalog
from billing_engine.state.database import get_engine, make_session_factory, set_tenant_context
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from billing_api.config import APISettings, load_api_settings
from billing_api.middleware.rbac import Role, get_user_role
from billing_api.services.batch_processor import TenantBatchProcessor
from billing_api.services.lifecycle_service import SubscriptionLifecycleManager
from billing_api.services.notification_service import NotificationService
from billing_api.services.summary_service import BillingSummaryService
from billing_api.services.usage_ledger import UsageLedger
from billing_api.services.webhook_processor import WebhookEventProcessor

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Plan catalog
# ---------------------------------------------------------------------------

_catalog: PlanCatalog | None = None


def get_catalog() -> PlanCatalog:
    """Return the process-wide plan catalog."""
    global _catalog  # noqa: PLW0603
    if _catalog is None:
        _catalog = default_catalog()
    return _catalog


CatalogDep = Annotated[PlanCatalog, Depends(get_catalog)]


def get_free_tier(settings: SettingsDep, catalog: CatalogDep) -> FreeTierDefaults:
    return settings.free_tier_defaults(catalog)


FreeTierDep = Annotated[FreeTierDefaults, Depends(get_free_tier)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by the webhook and batch processors, which open one short
    transaction per processing step instead of a request-wide session.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(session_factory: SessionFactoryDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` **without** tenant RLS context.

    Only for health checks; tenant-scoped endpoints use :data:`SessionDep`.
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


PublicSessionDep = Annotated[AsyncSession, Depends(get_db_session)]


async def get_tenant_session(
    request: Request,
    session_factory: SessionFactoryDep,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` with the RLS tenant context set.

    The session commits on clean exit and rolls back on exception.
    Handlers that must act after commit (notifications) commit explicitly.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")

    session = session_factory()
    try:
        await set_tenant_context(session, tenant_id)
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]

# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

_notifier: NotificationService | None = None


def init_notifier(settings: APISettings) -> NotificationService:
    """Create and cache the global :class:`NotificationService`."""
    global _notifier  # noqa: PLW0603
    _notifier = NotificationService(settings.notification_url, timeout=settings.notification_timeout_seconds)
    return _notifier


async def dispose_notifier() -> None:
    """Drain pending deliveries and close the notifier's HTTP client."""
    global _notifier  # noqa: PLW0603
    if _notifier is not None:
        await _notifier.close()
        _notifier = None


def get_notifier() -> NotificationService:
    """Return the cached :class:`NotificationService` singleton."""
    if _notifier is None:
        raise RuntimeError(
            "NotificationService has not been initialised. Ensure init_notifier() is called during application startup."
        )
    return _notifier


NotifierDep = Annotated[NotificationService, Depends(get_notifier)]

# ---------------------------------------------------------------------------
# Tenant / user identity (populated by TenantContextMiddleware)
# ---------------------------------------------------------------------------


def get_tenant_id(request: Request) -> str:
    """Extract tenant_id from request state."""
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


TenantDep = Annotated[str, Depends(get_tenant_id)]


def get_user_identity(request: Request) -> str:
    """Extract user identity from request state."""
    return getattr(request.state, "sub", "anonymous")


UserDep = Annotated[str, Depends(get_user_identity)]

RoleDep = Annotated[Role, Depends(get_user_role)]

# ---------------------------------------------------------------------------
# Billing services
# ---------------------------------------------------------------------------


def get_usage_ledger(
    session: SessionDep,
    tenant_id: TenantDep,
    user: UserDep,
    catalog: CatalogDep,
    free_tier: FreeTierDep,
) -> UsageLedger:
    return UsageLedger(session, tenant_id, catalog, free_tier, actor=f"user:{user}")


LedgerDep = Annotated[UsageLedger, Depends(get_usage_ledger)]


def get_lifecycle_manager(
    session: SessionDep,
    tenant_id: TenantDep,
    user: UserDep,
    catalog: CatalogDep,
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(session, tenant_id, catalog, actor=f"user:{user}")


LifecycleDep = Annotated[SubscriptionLifecycleManager, Depends(get_lifecycle_manager)]


def get_summary_service(
    session: SessionDep,
    tenant_id: TenantDep,
    catalog: CatalogDep,
    free_tier: FreeTierDep,
) -> BillingSummaryService:
    return BillingSummaryService(session, tenant_id, catalog, free_tier)


SummaryDep = Annotated[BillingSummaryService, Depends(get_summary_service)]


def get_webhook_processor(
    session_factory: SessionFactoryDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    notifier: NotifierDep,
) -> WebhookEventProcessor:
    return WebhookEventProcessor(session_factory, catalog, settings, notifier)


WebhookProcessorDep = Annotated[WebhookEventProcessor, Depends(get_webhook_processor)]


def get_batch_processor(
    session_factory: SessionFactoryDep,
    catalog: CatalogDep,
    settings: SettingsDep,
    notifier: NotifierDep,
) -> TenantBatchProcessor:
    return TenantBatchProcessor(session_factory, catalog, settings, notifier)


BatchProcessorDep = Annotated[TenantBatchProcessor, Depends(get_batch_processor)]
