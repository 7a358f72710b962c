"""Repository classes providing access to the billing state store.

Each tenant-scoped repository takes an ``AsyncSession`` and a ``tenant_id``
at construction time and operates within the caller's transaction boundary.
All writes call ``session.flush()``; the caller is responsible for
``session.commit()`` (or relying on the ``get_session`` context manager).

:class:`BillingScanRepository` is the only cross-tenant repository.  It is
used by the batch processor, the webhook tenant resolver and maintenance
jobs, never by request handlers acting for a tenant.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.state.tables import (
    AuditEventTable,
    FeatureOverrideTable,
    ProcessingLockTable,
    ProviderEventTable,
    SubscriptionTable,
    UsageCounterTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    """Return a dialect-specific ``INSERT`` construct supporting ``ON CONFLICT``.

    PostgreSQL and SQLite both implement ``ON CONFLICT ... DO UPDATE/NOTHING``
    and ``RETURNING``; the SQLAlchemy constructs live in their dialect
    modules.
    """
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Reads and writes for the ``subscriptions`` table."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, subscription_id: str, *, for_update: bool = False) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.tenant_id == self._tenant_id,
            SubscriptionTable.id == subscription_id,
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_open(self, *, for_update: bool = False) -> SubscriptionTable | None:
        """Return the tenant's single non-cancelled subscription, if any.

        With ``for_update`` the row is locked (``SELECT ... FOR UPDATE`` on
        PostgreSQL) so concurrent transitions on the same subscription
        serialize.
        """
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.tenant_id == self._tenant_id,
            SubscriptionTable.status != "cancelled",
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_latest(self) -> SubscriptionTable | None:
        """Return the open subscription, else the most recently created one."""
        current = await self.get_open()
        if current is not None:
            return current
        stmt = (
            select(SubscriptionTable)
            .where(SubscriptionTable.tenant_id == self._tenant_id)
            .order_by(SubscriptionTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def add(self, row: SubscriptionTable) -> SubscriptionTable:
        if row.tenant_id != self._tenant_id:
            raise ValueError(f"Subscription tenant {row.tenant_id!r} does not match repository tenant")
        self._session.add(row)
        await self._session.flush()
        return row

    async def save(self, row: SubscriptionTable) -> None:
        """Flush pending attribute changes on *row*."""
        row.updated_at = datetime.now(UTC)
        await self._session.flush()


# ---------------------------------------------------------------------------
# UsageCounterRepository
# ---------------------------------------------------------------------------


class UsageCounterRepository:
    """Per-tenant usage counters with an atomic add-and-return primitive."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get_value(self, usage_type: str, period_start: datetime) -> int:
        """Return the counter value for the period starting at *period_start*.

        A missing row, or a row left over from an earlier period, reads as 0.
        """
        stmt = select(UsageCounterTable.current_value).where(
            UsageCounterTable.tenant_id == self._tenant_id,
            UsageCounterTable.usage_type == usage_type,
            UsageCounterTable.period_start >= period_start,
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return int(value) if value is not None else 0

    async def list_values(self, period_start: datetime) -> dict[str, int]:
        stmt = select(UsageCounterTable.usage_type, UsageCounterTable.current_value).where(
            UsageCounterTable.tenant_id == self._tenant_id,
            UsageCounterTable.period_start >= period_start,
        )
        result = await self._session.execute(stmt)
        return {usage_type: int(value) for usage_type, value in result.all()}

    async def increment(self, usage_type: str, amount: int, period_start: datetime) -> int:
        """Atomically add *amount* and return the new value.

        Implemented as a single ``INSERT ... ON CONFLICT DO UPDATE ...
        RETURNING`` statement so concurrent callers never lose updates.  The
        first increment of a new period lazily resets the counter in the
        same statement.
        """
        if amount <= 0:
            raise ValueError(f"Increment amount must be positive, got {amount}")

        now = datetime.now(UTC)
        stmt = _dialect_insert(self._session, UsageCounterTable).values(
            tenant_id=self._tenant_id,
            usage_type=usage_type,
            current_value=amount,
            period_start=period_start,
            updated_at=now,
        )
        rolled_over = UsageCounterTable.period_start < stmt.excluded.period_start
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "usage_type"],
            set_={
                "current_value": case(
                    (rolled_over, stmt.excluded.current_value),
                    else_=UsageCounterTable.current_value + stmt.excluded.current_value,
                ),
                "period_start": case(
                    (rolled_over, stmt.excluded.period_start),
                    else_=UsageCounterTable.period_start,
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(UsageCounterTable.current_value)

        result = await self._session.execute(stmt)
        new_value = int(result.scalar_one())
        await self._session.flush()
        return new_value


# ---------------------------------------------------------------------------
# FeatureOverrideRepository
# ---------------------------------------------------------------------------


class FeatureOverrideRepository:
    """Tenant-level feature and limit overrides."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    def _active_clause(self, now: datetime) -> Any:
        return or_(FeatureOverrideTable.expires_at.is_(None), FeatureOverrideTable.expires_at > now)

    async def get_active(self, feature_key: str, now: datetime) -> FeatureOverrideTable | None:
        """Return the unexpired override for *feature_key*, if any."""
        stmt = select(FeatureOverrideTable).where(
            FeatureOverrideTable.tenant_id == self._tenant_id,
            FeatureOverrideTable.feature_key == feature_key,
            self._active_clause(now),
        ).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self, now: datetime) -> list[FeatureOverrideTable]:
        stmt = (
            select(FeatureOverrideTable)
            .where(FeatureOverrideTable.tenant_id == self._tenant_id, self._active_clause(now))
            .order_by(FeatureOverrideTable.feature_key)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(
        self,
        feature_key: str,
        value: Any,
        *,
        expires_at: datetime | None,
        reason: str | None,
        created_by: str | None,
    ) -> None:
        now = datetime.now(UTC)
        stmt = _dialect_insert(self._session, FeatureOverrideTable).values(
            tenant_id=self._tenant_id,
            feature_key=feature_key,
            override_value=value,
            expires_at=expires_at,
            reason=reason,
            created_by=created_by,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "feature_key"],
            set_={
                "override_value": stmt.excluded.override_value,
                "expires_at": stmt.excluded.expires_at,
                "reason": stmt.excluded.reason,
                "created_by": stmt.excluded.created_by,
                "created_at": stmt.excluded.created_at,
            },
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def delete(self, feature_key: str) -> bool:
        """Remove an override.  Returns ``True`` if a row was deleted."""
        stmt = delete(FeatureOverrideTable).where(
            FeatureOverrideTable.tenant_id == self._tenant_id,
            FeatureOverrideTable.feature_key == feature_key,
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# ProviderEventRepository
# ---------------------------------------------------------------------------


class ProviderEventRepository:
    """Deduplication store for inbound provider events."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, provider: str, provider_event_id: str) -> ProviderEventTable | None:
        stmt = select(ProviderEventTable).where(
            ProviderEventTable.tenant_id == self._tenant_id,
            ProviderEventTable.provider == provider,
            ProviderEventTable.provider_event_id == provider_event_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_received(
        self,
        *,
        provider: str,
        provider_event_id: str,
        event_type: str,
        raw_payload: dict[str, Any] | None,
    ) -> ProviderEventTable:
        """Insert a ``pending`` record or return the existing one.

        ``ON CONFLICT DO NOTHING`` on the natural key eliminates the race
        between two concurrent deliveries of the same event.
        """
        stmt = _dialect_insert(self._session, ProviderEventTable).values(
            tenant_id=self._tenant_id,
            provider=provider,
            provider_event_id=provider_event_id,
            event_type=event_type,
            raw_payload=raw_payload,
            processing_status="pending",
            retry_count=0,
            received_at=datetime.now(UTC),
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["tenant_id", "provider", "provider_event_id"])
        await self._session.execute(stmt)
        await self._session.flush()

        record = await self.get(provider, provider_event_id)
        assert record is not None  # noqa: S101
        return record

    async def mark_processed(self, record_id: int, *, note: str | None = None) -> None:
        stmt = (
            update(ProviderEventTable)
            .where(ProviderEventTable.id == record_id, ProviderEventTable.tenant_id == self._tenant_id)
            .values(processing_status="processed", processed_at=datetime.now(UTC), error_message=note)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def mark_failed(self, record_id: int, error_message: str) -> bool:
        """Mark a record failed and bump ``retry_count``.

        Records that another worker already marked ``processed`` are left
        untouched; returns ``False`` in that case.
        """
        stmt = (
            update(ProviderEventTable)
            .where(
                ProviderEventTable.id == record_id,
                ProviderEventTable.tenant_id == self._tenant_id,
                ProviderEventTable.processing_status != "processed",
            )
            .values(
                processing_status="failed",
                retry_count=ProviderEventTable.retry_count + 1,
                error_message=error_message[:2000],
            )
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def count_by_status(self) -> dict[str, int]:
        stmt = (
            select(ProviderEventTable.processing_status, func.count())
            .where(ProviderEventTable.tenant_id == self._tenant_id)
            .group_by(ProviderEventTable.processing_status)
        )
        result = await self._session.execute(stmt)
        return {status: int(count) for status, count in result.all()}


# ---------------------------------------------------------------------------
# AuditEventRepository
# ---------------------------------------------------------------------------


class AuditEventRepository:
    """Append-only audit trail with hash-chaining for tamper evidence.

    Each entry is linked to its predecessor via ``previous_hash``, forming a
    per-tenant chain.  ``entry_hash`` is a SHA-256 digest of the entry's
    content fields concatenated with the previous hash, so modifying any
    stored row breaks the chain for every later entry.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @staticmethod
    def _compute_hash(
        *,
        entry_id: str,
        tenant_id: str,
        subscription_id: str | None,
        event_type: str,
        occurred_at: datetime,
        actor: str,
        amount: Decimal | None,
        idempotency_key: str | None,
        metadata: dict[str, Any] | None,
        previous_hash: str | None,
    ) -> str:
        """SHA-256 over the ``|``-joined content fields; ``None`` hashes as ``""``."""
        parts = [
            entry_id,
            tenant_id,
            subscription_id or "",
            event_type,
            occurred_at.astimezone(UTC).isoformat(),
            actor,
            f"{amount:.2f}" if amount is not None else "",
            idempotency_key or "",
            json.dumps(metadata, sort_keys=True, default=str) if metadata else "",
            previous_hash or "",
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def get_latest_hash(self) -> str | None:
        stmt = (
            select(AuditEventTable.entry_hash)
            .where(AuditEventTable.tenant_id == self._tenant_id)
            .order_by(AuditEventTable.seq.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def append(
        self,
        *,
        event_type: str,
        actor: str,
        occurred_at: datetime,
        subscription_id: str | None = None,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEventTable:
        """Append an audit event and return the stored row."""
        # Serialize chain appends per tenant so two writers cannot fork the
        # chain by reading the same previous_hash.  SQLite has a single
        # writer and needs no lock.
        if "postgresql" in _dialect_name(self._session):
            lock_id = int(hashlib.sha256(f"audit_chain_{self._tenant_id}".encode()).hexdigest()[:8], 16) & 0x7FFFFFFF
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:lock_id)"),
                {"lock_id": lock_id},
            )

        previous_hash = await self.get_latest_hash()
        entry_id = uuid.uuid4().hex
        entry_hash = self._compute_hash(
            entry_id=entry_id,
            tenant_id=self._tenant_id,
            subscription_id=subscription_id,
            event_type=event_type,
            occurred_at=occurred_at,
            actor=actor,
            amount=amount,
            idempotency_key=idempotency_key,
            metadata=metadata,
            previous_hash=previous_hash,
        )
        row = AuditEventTable(
            id=entry_id,
            tenant_id=self._tenant_id,
            subscription_id=subscription_id,
            event_type=event_type,
            occurred_at=occurred_at,
            recorded_at=datetime.now(UTC),
            actor=actor,
            amount=amount,
            idempotency_key=idempotency_key,
            metadata_json=metadata,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: tenant=%s subscription=%s event=%s actor=%s amount=%s",
            self._tenant_id,
            subscription_id or "-",
            event_type,
            actor,
            amount if amount is not None else "-",
        )
        return row

    async def get_by_idempotency_key(self, idempotency_key: str) -> AuditEventTable | None:
        stmt = select(AuditEventTable).where(
            AuditEventTable.tenant_id == self._tenant_id,
            AuditEventTable.idempotency_key == idempotency_key,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_for_subscription(self, subscription_id: str) -> AuditEventTable | None:
        """Return the subscription's most recent event by ``(occurred_at, seq)``."""
        stmt = (
            select(AuditEventTable)
            .where(
                AuditEventTable.tenant_id == self._tenant_id,
                AuditEventTable.subscription_id == subscription_id,
            )
            .order_by(AuditEventTable.occurred_at.desc(), AuditEventTable.seq.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_subscription(
        self,
        subscription_id: str,
        *,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEventTable]:
        """Return the subscription's events oldest first."""
        stmt = select(AuditEventTable).where(
            AuditEventTable.tenant_id == self._tenant_id,
            AuditEventTable.subscription_id == subscription_id,
        )
        if event_type is not None:
            stmt = stmt.where(AuditEventTable.event_type == event_type)
        stmt = stmt.order_by(AuditEventTable.occurred_at.asc(), AuditEventTable.seq.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def query(
        self,
        *,
        event_type: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEventTable]:
        """Query the tenant's events, most recent first."""
        stmt = select(AuditEventTable).where(AuditEventTable.tenant_id == self._tenant_id)
        if event_type is not None:
            stmt = stmt.where(AuditEventTable.event_type == event_type)
        if since is not None:
            stmt = stmt.where(AuditEventTable.occurred_at >= since)
        stmt = stmt.order_by(AuditEventTable.seq.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Recompute the tenant's hash chain, oldest first.

        Returns
        -------
        tuple[bool, int]
            ``(is_valid, entries_checked)``.
        """
        stmt = (
            select(AuditEventTable)
            .where(AuditEventTable.tenant_id == self._tenant_id)
            .order_by(AuditEventTable.seq.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        checked = 0
        previous_hash: str | None = None
        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning(
                    "Audit chain break at entry %s: expected previous_hash=%s, got=%s",
                    entry.id,
                    previous_hash,
                    entry.previous_hash,
                )
                return (False, checked)

            expected_hash = self._compute_hash(
                entry_id=entry.id,
                tenant_id=entry.tenant_id,
                subscription_id=entry.subscription_id,
                event_type=entry.event_type,
                occurred_at=entry.occurred_at,
                actor=entry.actor,
                amount=entry.amount,
                idempotency_key=entry.idempotency_key,
                metadata=entry.metadata_json,
                previous_hash=entry.previous_hash,
            )
            if entry.entry_hash != expected_hash:
                logger.warning(
                    "Audit hash mismatch at entry %s: stored=%s, computed=%s",
                    entry.id,
                    entry.entry_hash,
                    expected_hash,
                )
                return (False, checked)

            previous_hash = entry.entry_hash
            checked += 1

        return (True, checked)


# ---------------------------------------------------------------------------
# ProcessingLockRepository
# ---------------------------------------------------------------------------


class ProcessingLockRepository:
    """Lease-based locks guarding a subscription's pending batch action.

    ``try_acquire`` is a single conditional upsert: insert a fresh lease, or
    take over an existing row only when its lease has expired.  No
    in-process mutex is involved, so any number of workers may race.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def try_acquire(
        self,
        subscription_id: str,
        *,
        locked_by: str,
        now: datetime,
        lease_seconds: int,
    ) -> int | None:
        """Attempt to take the lease.

        Returns
        -------
        int | None
            The row's ``attempt_count`` when the lease was acquired, or
            ``None`` if another worker holds an unexpired lease.
        """
        stmt = _dialect_insert(self._session, ProcessingLockTable).values(
            tenant_id=self._tenant_id,
            subscription_id=subscription_id,
            locked_by=locked_by,
            locked_at=now,
            lease_expires_at=now + timedelta(seconds=lease_seconds),
            attempt_count=0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["tenant_id", "subscription_id"],
            set_={
                "locked_by": stmt.excluded.locked_by,
                "locked_at": stmt.excluded.locked_at,
                "lease_expires_at": stmt.excluded.lease_expires_at,
            },
            where=ProcessingLockTable.lease_expires_at <= stmt.excluded.locked_at,
        ).returning(ProcessingLockTable.attempt_count)

        result = await self._session.execute(stmt)
        row = result.first()
        await self._session.flush()
        if row is None:
            logger.debug("Lease held elsewhere: tenant=%s subscription=%s", self._tenant_id, subscription_id)
            return None
        return int(row[0])

    async def get(self, subscription_id: str) -> ProcessingLockTable | None:
        stmt = select(ProcessingLockTable).where(
            ProcessingLockTable.tenant_id == self._tenant_id,
            ProcessingLockTable.subscription_id == subscription_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_failure(self, subscription_id: str, error: str) -> int:
        """Increment ``attempt_count`` and keep the lease in place.

        Returns the new attempt count (0 if the row vanished).
        """
        stmt = (
            update(ProcessingLockTable)
            .where(
                ProcessingLockTable.tenant_id == self._tenant_id,
                ProcessingLockTable.subscription_id == subscription_id,
            )
            .values(
                attempt_count=ProcessingLockTable.attempt_count + 1,
                last_error=error[:2000],
            )
            .returning(ProcessingLockTable.attempt_count)
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        await self._session.flush()
        return int(value) if value is not None else 0

    async def release(self, subscription_id: str) -> None:
        stmt = delete(ProcessingLockTable).where(
            ProcessingLockTable.tenant_id == self._tenant_id,
            ProcessingLockTable.subscription_id == subscription_id,
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# BillingScanRepository (cross-tenant)
# ---------------------------------------------------------------------------


class BillingScanRepository:
    """Cross-tenant queries for scheduled jobs and webhook tenant resolution.

    .. warning::
       These queries intentionally span all tenants.  Callers must hand any
       per-subscription work to a tenant-scoped repository.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def list_due_subscriptions(
        self,
        now: datetime,
        *,
        limit: int,
        after: tuple[datetime, str] | None = None,
    ) -> list[SubscriptionTable]:
        """Return subscriptions whose pending action is due, oldest first.

        Keyset pagination on ``(next_action_at, id)``: pass the last row of
        the previous page as *after*.
        """
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.next_action_at.is_not(None),
            SubscriptionTable.next_action_at <= now,
            SubscriptionTable.action_status == "pending",
            SubscriptionTable.status != "cancelled",
        )
        if after is not None:
            after_at, after_id = after
            stmt = stmt.where(
                or_(
                    SubscriptionTable.next_action_at > after_at,
                    and_(SubscriptionTable.next_action_at == after_at, SubscriptionTable.id > after_id),
                )
            )
        stmt = stmt.order_by(SubscriptionTable.next_action_at.asc(), SubscriptionTable.id.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_expiring_trials(
        self,
        now: datetime,
        until: datetime,
        *,
        limit: int,
        after: tuple[datetime, str] | None = None,
    ) -> list[SubscriptionTable]:
        """Return trialing subscriptions whose ``trial_end`` is in ``(now, until]``.

        Keyset pagination on ``(trial_end, id)``, as in
        :meth:`list_due_subscriptions`.
        """
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.status == "trialing",
            SubscriptionTable.trial_end.is_not(None),
            SubscriptionTable.trial_end > now,
            SubscriptionTable.trial_end <= until,
        )
        if after is not None:
            after_at, after_id = after
            stmt = stmt.where(
                or_(
                    SubscriptionTable.trial_end > after_at,
                    and_(SubscriptionTable.trial_end == after_at, SubscriptionTable.id > after_id),
                )
            )
        stmt = stmt.order_by(SubscriptionTable.trial_end.asc(), SubscriptionTable.id.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_tenant_by_provider_reference(
        self,
        provider: str,
        *,
        customer_id: str | None = None,
        subscription_id: str | None = None,
    ) -> str | None:
        """Resolve the tenant owning a provider customer or subscription id."""
        clauses = []
        if subscription_id:
            clauses.append(SubscriptionTable.provider_subscription_id == subscription_id)
        if customer_id:
            clauses.append(SubscriptionTable.provider_customer_id == customer_id)
        if not clauses:
            return None

        stmt = (
            select(SubscriptionTable.tenant_id)
            .where(SubscriptionTable.provider == provider, or_(*clauses))
            .order_by(SubscriptionTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_failed_provider_events(self, *, max_retries: int, limit: int) -> list[ProviderEventTable]:
        """Return failed provider events still eligible for reprocessing."""
        stmt = (
            select(ProviderEventTable)
            .where(
                ProviderEventTable.processing_status == "failed",
                ProviderEventTable.retry_count < max_retries,
            )
            .order_by(ProviderEventTable.received_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def purge_expired_locks(self, older_than: datetime) -> int:
        """Delete lock rows whose lease expired before *older_than*."""
        stmt = delete(ProcessingLockTable).where(ProcessingLockTable.lease_expires_at < older_than)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]
