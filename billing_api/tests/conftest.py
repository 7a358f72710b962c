"""Shared fixtures for billing API tests.

Services run against a real SQLite file through the local adapter, so
the row locks, upserts and hash chain behave the way they do in
production.  The FastAPI app gets the same database through dependency
overrides; notifications are captured instead of delivered.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from billing_engine.plans.catalog import FreeTierDefaults, PlanCatalog, PlanDefinition
from billing_engine.state.database import make_session_factory, session_scope
from billing_engine.state.repository import AuditEventRepository
from billing_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from billing_engine.state.tables import SubscriptionTable
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.dependencies import get_catalog, get_notifier, get_session_factory, get_settings
from billing_api.main import create_app
from billing_api.services.notification_service import NotificationService
from billing_api.services.provider_adapters import paypal_signature

TENANT = "tenant-a"
CRON_SECRET = "cron-test-secret"
STRIPE_SECRET = "whsec_test_secret"
POLAR_SECRET = "polar_test_secret"
PAYPAL_SECRET = "paypal_test_secret"
PAYPAL_WEBHOOK_ID = "WH-TEST-1"

# ---------------------------------------------------------------------------
# Settings and catalog
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return settings suitable for testing: fast retries, known secrets."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        stripe_webhook_secret=SecretStr(STRIPE_SECRET),
        polar_webhook_secret=SecretStr(POLAR_SECRET),
        paypal_webhook_secret=SecretStr(PAYPAL_SECRET),
        paypal_webhook_id=PAYPAL_WEBHOOK_ID,
        cron_secret=SecretStr(CRON_SECRET),
        retry_max_retries=1,
        retry_base_delay=0.001,
        retry_max_delay=0.01,
        batch_lease_seconds=60,
        batch_max_attempts=3,
    )


def _plan(
    plan_id: str,
    monthly: str,
    *,
    trial_days: int = 0,
    receipts: int = 10,
    sort_order: int = 0,
) -> PlanDefinition:
    return PlanDefinition(
        plan_id=plan_id,
        name=plan_id.title(),
        price_monthly=Decimal(monthly),
        price_yearly=Decimal(monthly) * 10,
        features={"ocr_processing": "basic", "analytics": "basic", "multi_user": plan_id != "free"},
        limits={
            "receipts_per_month": receipts,
            "invoices_per_month": 2,
            "storage_mb": 100,
            "users_max": 1,
        },
        trial_days=trial_days,
        sort_order=sort_order,
    )


@pytest.fixture()
def catalog() -> PlanCatalog:
    """A small catalog with round prices that make proration easy to check."""
    return PlanCatalog(
        [
            _plan("free", "0", receipts=10, sort_order=0),
            _plan("starter", "20", receipts=100, sort_order=1),
            _plan("growth", "40", receipts=-1, sort_order=2),
            _plan("basic", "30", receipts=50, sort_order=3),
            _plan("trial", "25", trial_days=14, receipts=100, sort_order=4),
        ]
    )


@pytest.fixture()
def free_tier(catalog: PlanCatalog) -> FreeTierDefaults:
    return catalog.free_tier_defaults("free")


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    """Provide a session factory over a fresh SQLite file."""
    engine = get_local_engine(tmp_path / "billing.db")
    await create_local_tables(engine)
    yield make_session_factory(engine)
    await engine.dispose()


SeedSubscription = Callable[..., Awaitable[str]]


@pytest.fixture()
def seed_subscription(session_factory: async_sessionmaker[AsyncSession]) -> SeedSubscription:
    """Insert a subscription row directly and return its id.

    A ``subscription_created`` audit event is written at ``created_at`` so
    the stale-event guard has a baseline.
    """

    async def _seed(tenant_id: str = TENANT, **overrides: Any) -> str:
        start = overrides.pop("current_period_start", datetime(2026, 1, 1, tzinfo=UTC))
        end = overrides.pop("current_period_end", datetime(2026, 1, 31, tzinfo=UTC))
        fields: dict[str, Any] = {
            "id": uuid.uuid4().hex,
            "tenant_id": tenant_id,
            "plan_id": "basic",
            "billing_cycle": "monthly",
            "status": "active",
            "current_period_start": start,
            "current_period_end": end,
            "amount": Decimal("30.00"),
            "credit_balance": Decimal("0.00"),
            "cancel_at_period_end": False,
            "next_charge_date": end,
            "pending_action": "renewal",
            "next_action_at": end,
            "action_status": "pending",
            "created_at": start,
            "updated_at": start,
        }
        fields.update(overrides)
        async with session_scope(session_factory, tenant_id) as session:
            session.add(SubscriptionTable(**fields))
            await session.flush()
            await AuditEventRepository(session, tenant_id).append(
                event_type="subscription_created",
                actor="test",
                occurred_at=fields["created_at"],
                subscription_id=fields["id"],
                amount=fields["amount"],
            )
        return fields["id"]

    return _seed


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


@pytest.fixture()
def notifier() -> MagicMock:
    """A notifier double that records what would have been sent."""
    mock = MagicMock(spec=NotificationService)
    mock.enabled = True
    return mock


def sent_templates(notifier: MagicMock) -> list[str]:
    """Return the templates handed to ``notifier.send_all`` in order."""
    templates: list[str] = []
    for call in notifier.send_all.call_args_list:
        templates.extend(n.template for n in call.args[0])
    return templates


# ---------------------------------------------------------------------------
# FastAPI app (async httpx)
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    catalog: PlanCatalog,
    session_factory: async_sessionmaker[AsyncSession],
    notifier: MagicMock,
):
    """Create the app wired to the test database, catalog and notifier."""
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_catalog] = lambda: catalog
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_notifier] = lambda: notifier
    return application


def tenant_headers(tenant_id: str = TENANT, role: str = "admin", user: str = "alice") -> dict[str, str]:
    return {"X-Tenant-ID": tenant_id, "X-User-ID": user, "X-User-Role": role}


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client acting as an admin of ``TENANT``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=tenant_headers()) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Signed webhook deliveries
# ---------------------------------------------------------------------------


def encode_body(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def stripe_headers(body: bytes, secret: str = STRIPE_SECRET) -> dict[str, str]:
    """Build a ``Stripe-Signature`` header signed at the current time."""
    timestamp = int(time.time())
    signed = f"{timestamp}.{body.decode('utf-8')}".encode()
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={timestamp},v1={signature}"}


def polar_headers(body: bytes, secret: str = POLAR_SECRET) -> dict[str, str]:
    return {"polar-signature": hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()}


def paypal_headers(body: bytes, transmission_id: str = "T-1", secret: str = PAYPAL_SECRET) -> dict[str, str]:
    transmission_time = "2026-01-16T00:00:00Z"
    return {
        "paypal-transmission-id": transmission_id,
        "paypal-transmission-time": transmission_time,
        "paypal-transmission-sig": paypal_signature(
            secret, transmission_id, transmission_time, PAYPAL_WEBHOOK_ID, body
        ),
    }


def stripe_event(
    event_type: str,
    *,
    event_id: str = "evt_1",
    created: datetime = datetime(2026, 1, 16, tzinfo=UTC),
    tenant_id: str | None = TENANT,
    customer: str = "cus_1",
    **obj: Any,
) -> dict[str, Any]:
    """Return a minimal Stripe event envelope."""
    data_object: dict[str, Any] = {"customer": customer, **obj}
    if tenant_id is not None:
        data_object["metadata"] = {"tenant_id": tenant_id}
    return {
        "id": event_id,
        "type": event_type,
        "created": int(created.timestamp()),
        "data": {"object": data_object},
    }
