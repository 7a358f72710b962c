"""Create the billing core tables.

Creates ``subscriptions``, ``usage_counters``, ``feature_overrides``,
``provider_events``, ``audit_events`` and ``processing_locks``.

On PostgreSQL every table gets a row-level security policy keyed on the
``app.tenant_id`` transaction setting.  Batch workers that scan across
tenants connect as the table owner, which bypasses RLS.

Revision ID: 001
Revises:
Create Date: 2026-09-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TENANT_TABLES = (
    "subscriptions",
    "usage_counters",
    "feature_overrides",
    "provider_events",
    "audit_events",
    "processing_locks",
)


def _json_type() -> sa.types.TypeEngine:
    return JSONB().with_variant(sa.JSON(), "sqlite")


def _seq_type() -> sa.types.TypeEngine:
    return sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("billing_cycle", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("credit_balance", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("trial_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_charge_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pending_action", sa.String(32), nullable=True),
        sa.Column("next_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("action_status", sa.String(16), nullable=True),
        sa.Column("provider", sa.String(32), nullable=True),
        sa.Column("provider_customer_id", sa.String(255), nullable=True),
        sa.Column("provider_subscription_id", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("current_period_start < current_period_end", name="ck_subscriptions_period_order"),
        sa.CheckConstraint("credit_balance >= 0", name="ck_subscriptions_credit_nonneg"),
        sa.CheckConstraint(
            "status IN ('trialing', 'active', 'paused', 'cancelled')",
            name="ck_subscriptions_status",
        ),
    )
    op.create_index(
        "uq_subscriptions_tenant_open",
        "subscriptions",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'cancelled'"),
        sqlite_where=sa.text("status <> 'cancelled'"),
    )
    op.create_index("ix_subscriptions_tenant", "subscriptions", ["tenant_id"])
    op.create_index("ix_subscriptions_due", "subscriptions", ["action_status", "next_action_at", "id"])
    op.create_index("ix_subscriptions_provider_customer", "subscriptions", ["provider", "provider_customer_id"])
    op.create_index(
        "ix_subscriptions_provider_subscription",
        "subscriptions",
        ["provider", "provider_subscription_id"],
    )

    op.create_table(
        "usage_counters",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("usage_type", sa.String(64), nullable=False),
        sa.Column("current_value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "usage_type"),
        sa.CheckConstraint("current_value >= 0", name="ck_usage_counters_nonneg"),
    )

    op.create_table(
        "feature_overrides",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("feature_key", sa.String(128), nullable=False),
        sa.Column("override_value", _json_type(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(256), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "feature_key"),
    )

    op.create_table(
        "provider_events",
        sa.Column("id", _seq_type(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("provider_event_id", sa.String(255), nullable=False),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("raw_payload", _json_type(), nullable=True),
        sa.Column("processing_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "provider", "provider_event_id", name="uq_provider_events_natural_key"),
        sa.CheckConstraint(
            "processing_status IN ('pending', 'processed', 'failed')",
            name="ck_provider_events_status",
        ),
    )
    op.create_index("ix_provider_events_status", "provider_events", ["processing_status", "received_at"])

    op.create_table(
        "audit_events",
        sa.Column("seq", _seq_type(), primary_key=True, autoincrement=True),
        sa.Column("id", sa.String(64), nullable=False, unique=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.String(64), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("actor", sa.String(256), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("metadata_json", _json_type(), nullable=True),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        sa.UniqueConstraint("tenant_id", "idempotency_key", name="uq_audit_events_idempotency"),
    )
    op.create_index(
        "ix_audit_events_subscription",
        "audit_events",
        ["tenant_id", "subscription_id", "occurred_at", "seq"],
    )
    op.create_index("ix_audit_events_tenant_type", "audit_events", ["tenant_id", "event_type"])

    op.create_table(
        "processing_locks",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.String(64), nullable=False),
        sa.Column("locked_by", sa.String(256), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "subscription_id"),
    )
    op.create_index("ix_processing_locks_expiry", "processing_locks", ["lease_expires_at"])

    if op.get_bind().dialect.name == "postgresql":
        for table in _TENANT_TABLES:
            op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
            op.execute(
                f"CREATE POLICY tenant_isolation_{table} ON {table} "
                "USING (tenant_id = current_setting('app.tenant_id', true))"
            )
        # The audit trail is append-only.
        op.execute("REVOKE UPDATE, DELETE ON audit_events FROM PUBLIC")


def downgrade() -> None:
    if op.get_bind().dialect.name == "postgresql":
        for table in _TENANT_TABLES:
            op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")

    op.drop_index("ix_processing_locks_expiry")
    op.drop_table("processing_locks")
    op.drop_index("ix_audit_events_tenant_type")
    op.drop_index("ix_audit_events_subscription")
    op.drop_table("audit_events")
    op.drop_index("ix_provider_events_status")
    op.drop_table("provider_events")
    op.drop_table("feature_overrides")
    op.drop_table("usage_counters")
    op.drop_index("ix_subscriptions_provider_subscription")
    op.drop_index("ix_subscriptions_provider_customer")
    op.drop_index("ix_subscriptions_due")
    op.drop_index("ix_subscriptions_tenant")
    op.drop_index("uq_subscriptions_tenant_open")
    op.drop_table("subscriptions")
