"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.

Tables:

* ``subscriptions`` -- one row per tenant subscription, never hard-deleted.
* ``usage_counters`` -- running usage per ``(tenant_id, usage_type)``.
* ``feature_overrides`` -- tenant-level entitlement overrides.
* ``provider_events`` -- deduplication store for inbound webhooks.
* ``audit_events`` -- append-only, hash-chained billing audit trail.
* ``processing_locks`` -- ephemeral batch leases.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# SQLite only auto-increments ``INTEGER PRIMARY KEY`` columns.
_SeqType = BigInteger().with_variant(Integer(), "sqlite")

_Money = Numeric(12, 2, asdecimal=True)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """``DateTime(timezone=True)`` that always binds and returns UTC-aware values.

    SQLite stores datetimes as naive text; values are normalised to UTC on
    the way in and tagged as UTC on the way out so that comparisons behave
    identically on both backends.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionTable(Base):
    """A tenant's subscription to a plan.

    Mutated only by the lifecycle manager.  Cancelled rows are retained; the
    partial unique index allows at most one non-cancelled row per tenant.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    credit_balance: Mapped[Decimal] = mapped_column(_Money, nullable=False, default=Decimal("0.00"))
    trial_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_charge_date: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    pending_action: Mapped[str | None] = mapped_column(String(32), nullable=True)
    next_action_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    action_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(32), nullable=True)
    provider_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("current_period_start < current_period_end", name="ck_subscriptions_period_order"),
        CheckConstraint("credit_balance >= 0", name="ck_subscriptions_credit_nonneg"),
        CheckConstraint(
            "status IN ('trialing', 'active', 'paused', 'cancelled')",
            name="ck_subscriptions_status",
        ),
        Index(
            "uq_subscriptions_tenant_open",
            "tenant_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("ix_subscriptions_tenant", "tenant_id"),
        Index("ix_subscriptions_due", "action_status", "next_action_at", "id"),
        Index("ix_subscriptions_provider_customer", "provider", "provider_customer_id"),
        Index("ix_subscriptions_provider_subscription", "provider", "provider_subscription_id"),
    )


# ---------------------------------------------------------------------------
# Usage counters
# ---------------------------------------------------------------------------


class UsageCounterTable(Base):
    """Running usage per tenant and usage type for the current period."""

    __tablename__ = "usage_counters"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    usage_type: Mapped[str] = mapped_column(String(64), nullable=False)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "usage_type"),
        CheckConstraint("current_value >= 0", name="ck_usage_counters_nonneg"),
    )


# ---------------------------------------------------------------------------
# Feature overrides
# ---------------------------------------------------------------------------


class FeatureOverrideTable(Base):
    """Tenant-level override of a plan feature or limit.

    ``override_value`` is a JSON scalar: ``true``/``false``, a level string,
    or an integer limit (``-1`` for unlimited).
    """

    __tablename__ = "feature_overrides"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    feature_key: Mapped[str] = mapped_column(String(128), nullable=False)
    override_value: Mapped[Any] = mapped_column(_JsonType, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("tenant_id", "feature_key"),)


# ---------------------------------------------------------------------------
# Provider events (webhook deduplication store)
# ---------------------------------------------------------------------------


class ProviderEventTable(Base):
    """One row per distinct inbound provider event.

    The unique natural key turns redelivery of an already-processed event
    into a no-op.
    """

    __tablename__ = "provider_events"

    id: Mapped[int] = mapped_column(_SeqType, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    processing_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "provider",
            "provider_event_id",
            name="uq_provider_events_natural_key",
        ),
        CheckConstraint(
            "processing_status IN ('pending', 'processed', 'failed')",
            name="ck_provider_events_status",
        ),
        Index("ix_provider_events_status", "processing_status", "received_at"),
    )


# ---------------------------------------------------------------------------
# Audit events
# ---------------------------------------------------------------------------


class AuditEventTable(Base):
    """Append-only billing audit trail with tamper-evidence via hash chaining.

    ``seq`` is a monotonically increasing tie breaker for events sharing the
    same ``occurred_at``.  ``entry_hash`` is a SHA-256 digest over the
    entry's content and ``previous_hash`` links to the preceding entry of the
    same tenant.
    """

    __tablename__ = "audit_events"

    seq: Mapped[int] = mapped_column(_SeqType, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "idempotency_key", name="uq_audit_events_idempotency"),
        Index("ix_audit_events_subscription", "tenant_id", "subscription_id", "occurred_at", "seq"),
        Index("ix_audit_events_tenant_type", "tenant_id", "event_type"),
    )


# ---------------------------------------------------------------------------
# Processing locks (batch leases)
# ---------------------------------------------------------------------------


class ProcessingLockTable(Base):
    """Time-bounded lease on a subscription's pending batch action.

    A row is locked only while ``now < lease_expires_at``; expired rows are
    free for any worker to take over.
    """

    __tablename__ = "processing_locks"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_id: Mapped[str] = mapped_column(String(64), nullable=False)
    locked_by: Mapped[str] = mapped_column(String(256), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    lease_expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        PrimaryKeyConstraint("tenant_id", "subscription_id"),
        Index("ix_processing_locks_expiry", "lease_expires_at"),
    )
