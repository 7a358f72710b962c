"""Usage and feature ledger: entitlement checks and metered counters.

Entitlements resolve in two layers: the tenant's plan (from the catalog,
via its open subscription), then any unexpired tenant override, which
always wins.  Usage counters are incremented with a single atomic
add-and-return statement and reset on UTC calendar-month boundaries.

Failure semantics: if the subscription, plan or override lookup fails the
ledger falls back to the injected :class:`FreeTierDefaults` (the most
restrictive entitlements) and logs the failure.  It never fails open.  A
counter that cannot be read makes ``can_perform`` deny.

The check in :meth:`UsageLedger.can_perform` and the increment in
:meth:`UsageLedger.increment_usage` are separate statements, so two
concurrent callers may both pass the check and overshoot a limit by the
amount of the concurrent increments (a soft limit).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from billing_engine.billing.periods import usage_period_start
from billing_engine.errors import BillingNotFoundError, BillingValidationError, PlanNotFoundError
from billing_engine.models.subscription import SubscriptionStatus
from billing_engine.models.usage import UNLIMITED, FeatureValue, UsageDecision, UsageStatus, UsageType
from billing_engine.plans.catalog import (
    BOOLEAN_FEATURES,
    FEATURE_LEVELS,
    LIMIT_KEYS,
    FreeTierDefaults,
    PlanCatalog,
    PlanDefinition,
)
from billing_engine.state.repository import FeatureOverrideRepository, SubscriptionRepository, UsageCounterRepository
from billing_engine.state.tables import FeatureOverrideTable
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_api.services.audit_service import BillingAuditAction, BillingAuditService

logger = logging.getLogger(__name__)

# Subscription states that carry the plan's entitlements.
_ENTITLED_STATUSES = frozenset({SubscriptionStatus.TRIALING.value, SubscriptionStatus.ACTIVE.value})

DENY_LIMIT_EXCEEDED = "limit_exceeded"
DENY_USAGE_UNAVAILABLE = "usage_unavailable"


def validate_override_value(feature_key: str, value: Any) -> FeatureValue | int:
    """Return *value* if it is a legal override for *feature_key*.

    Raises
    ------
    BillingValidationError
        If the key is unknown or the value has the wrong shape.
    """
    if feature_key in LIMIT_KEYS:
        if isinstance(value, bool) or not isinstance(value, int) or value < UNLIMITED:
            raise BillingValidationError(
                f"Limit override for {feature_key!r} must be an integer >= -1, got {value!r}",
                user_message="Limit overrides must be a whole number, or -1 for unlimited.",
            )
        return value
    if feature_key in FEATURE_LEVELS:
        if value is False or value in FEATURE_LEVELS[feature_key]:
            return value
        raise BillingValidationError(
            f"Override for {feature_key!r} must be false or one of {FEATURE_LEVELS[feature_key]}, got {value!r}",
            user_message=f"Valid values for {feature_key} are false or "
            f"one of {', '.join(FEATURE_LEVELS[feature_key])}.",
        )
    if feature_key in BOOLEAN_FEATURES:
        if isinstance(value, bool):
            return value
        raise BillingValidationError(
            f"Override for {feature_key!r} must be a boolean, got {value!r}",
            user_message=f"{feature_key} can only be switched on or off.",
        )
    raise BillingValidationError(
        f"Unknown feature or limit key {feature_key!r}",
        user_message="Unknown feature.",
    )


class UsageLedger:
    """Entitlement checks and usage metering for one tenant.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    tenant_id:
        Tenant whose entitlements and counters are read.
    catalog:
        Plan catalog used to resolve the subscription's plan.
    free_tier:
        Most-restrictive entitlements used when plan data cannot be read.
    actor:
        Principal recorded on override audit events.
    """

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: str,
        catalog: PlanCatalog,
        free_tier: FreeTierDefaults,
        *,
        actor: str = "system",
    ) -> None:
        self._tenant_id = tenant_id
        self._catalog = catalog
        self._free_tier = free_tier
        self._actor = actor
        self._subscriptions = SubscriptionRepository(session, tenant_id)
        self._counters = UsageCounterRepository(session, tenant_id)
        self._overrides = FeatureOverrideRepository(session, tenant_id)
        self._audit = BillingAuditService(session, tenant_id=tenant_id, actor=actor)

    # -- entitlement resolution ---------------------------------------------

    async def _plan(self) -> PlanDefinition | FreeTierDefaults:
        """Return the entitlement source for the tenant's current plan."""
        try:
            subscription = await self._subscriptions.get_open()
        except SQLAlchemyError:
            logger.warning(
                "Subscription lookup failed for tenant=%s; using free-tier defaults",
                self._tenant_id,
                exc_info=True,
            )
            return self._free_tier

        if subscription is None or subscription.status not in _ENTITLED_STATUSES:
            return self._free_tier
        try:
            return self._catalog.get(subscription.plan_id)
        except PlanNotFoundError:
            logger.error(
                "Subscription %s references unknown plan %r; using free-tier defaults",
                subscription.id,
                subscription.plan_id,
            )
            return self._free_tier

    async def _override(self, key: str, now: datetime) -> FeatureOverrideTable | None:
        return await self._overrides.get_active(key, now)

    async def resolve_limit(self, limit_key: str, *, now: datetime | None = None) -> int:
        """Return the effective limit for *limit_key* (``-1`` when unlimited)."""
        now = now or datetime.now(UTC)
        plan = await self._plan()
        try:
            override = await self._override(limit_key, now)
        except SQLAlchemyError:
            logger.warning("Override lookup failed for tenant=%s key=%s", self._tenant_id, limit_key, exc_info=True)
            return self._free_tier.limit(limit_key)
        if override is not None:
            return int(override.override_value)
        return plan.limit(limit_key)

    async def resolve_limits(self, *, now: datetime | None = None) -> dict[str, int]:
        """Return every effective usage limit."""
        now = now or datetime.now(UTC)
        plan = await self._plan()
        try:
            overrides = {row.feature_key: row.override_value for row in await self._overrides.list_active(now)}
        except SQLAlchemyError:
            logger.warning("Override lookup failed for tenant=%s", self._tenant_id, exc_info=True)
            return {key: self._free_tier.limit(key) for key in sorted(LIMIT_KEYS)}
        return {key: int(overrides[key]) if key in overrides else plan.limit(key) for key in sorted(LIMIT_KEYS)}

    async def resolve_features(self, *, now: datetime | None = None) -> dict[str, FeatureValue]:
        """Return every known feature's effective value."""
        now = now or datetime.now(UTC)
        plan = await self._plan()
        keys = sorted(set(FEATURE_LEVELS) | BOOLEAN_FEATURES)
        try:
            overrides = {row.feature_key: row.override_value for row in await self._overrides.list_active(now)}
        except SQLAlchemyError:
            logger.warning("Override lookup failed for tenant=%s", self._tenant_id, exc_info=True)
            return {key: self._free_tier.feature(key) for key in keys}
        return {key: overrides[key] if key in overrides else plan.feature(key) for key in keys}

    # -- usage ---------------------------------------------------------------

    async def check_usage(self, usage_type: UsageType | str, *, now: datetime | None = None) -> UsageStatus:
        """Return current usage, the effective limit and what remains this period."""
        usage_type = UsageType(usage_type)
        now = now or datetime.now(UTC)
        limit = await self.resolve_limit(usage_type.limit_key, now=now)
        current = await self._counters.get_value(usage_type.value, usage_period_start(now))

        unlimited = limit == UNLIMITED
        return UsageStatus(
            usage_type=usage_type,
            current=current,
            limit=limit,
            remaining=UNLIMITED if unlimited else max(0, limit - current),
            unlimited=unlimited,
        )

    async def can_perform(
        self,
        usage_type: UsageType | str,
        amount: int = 1,
        *,
        now: datetime | None = None,
    ) -> UsageDecision:
        """Decide whether *amount* more units fit under the effective limit."""
        usage_type = UsageType(usage_type)
        if amount <= 0:
            raise BillingValidationError(
                f"Usage amount must be positive, got {amount}",
                user_message="Usage amount must be at least 1.",
            )
        now = now or datetime.now(UTC)
        limit = await self.resolve_limit(usage_type.limit_key, now=now)

        try:
            current = await self._counters.get_value(usage_type.value, usage_period_start(now))
        except SQLAlchemyError:
            logger.warning(
                "Usage counter read failed for tenant=%s type=%s; denying",
                self._tenant_id,
                usage_type.value,
                exc_info=True,
            )
            return UsageDecision(
                allowed=False,
                reason=DENY_USAGE_UNAVAILABLE,
                usage_type=usage_type,
                requested=amount,
                current=0,
                limit=limit,
            )

        allowed = limit == UNLIMITED or current + amount <= limit
        return UsageDecision(
            allowed=allowed,
            reason=None if allowed else DENY_LIMIT_EXCEEDED,
            usage_type=usage_type,
            requested=amount,
            current=current,
            limit=limit,
        )

    async def increment_usage(
        self,
        usage_type: UsageType | str,
        amount: int = 1,
        *,
        now: datetime | None = None,
    ) -> int:
        """Atomically add *amount* to the counter and return the new value."""
        usage_type = UsageType(usage_type)
        if amount <= 0:
            raise BillingValidationError(
                f"Usage amount must be positive, got {amount}",
                user_message="Usage amount must be at least 1.",
            )
        now = now or datetime.now(UTC)
        new_value = await self._counters.increment(usage_type.value, amount, usage_period_start(now))
        logger.debug("Usage incremented: tenant=%s type=%s value=%d", self._tenant_id, usage_type.value, new_value)
        return new_value

    # -- features ------------------------------------------------------------

    async def is_feature_enabled(self, feature: str, *, now: datetime | None = None) -> FeatureValue:
        """Return ``False``, ``True`` or the feature's level string.

        Unknown features are reported as disabled.
        """
        if feature not in FEATURE_LEVELS and feature not in BOOLEAN_FEATURES:
            logger.debug("Feature check for unknown feature %r", feature)
            return False

        now = now or datetime.now(UTC)
        plan = await self._plan()
        try:
            override = await self._override(feature, now)
        except SQLAlchemyError:
            logger.warning("Override lookup failed for tenant=%s feature=%s", self._tenant_id, feature, exc_info=True)
            return self._free_tier.feature(feature)
        if override is not None:
            return override.override_value
        return plan.feature(feature)

    # -- overrides -----------------------------------------------------------

    async def list_overrides(self, *, now: datetime | None = None) -> list[FeatureOverrideTable]:
        return await self._overrides.list_active(now or datetime.now(UTC))

    async def set_override(
        self,
        feature_key: str,
        value: Any,
        *,
        expires_at: datetime | None = None,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> FeatureOverrideTable:
        """Create or replace an override and audit the change."""
        now = now or datetime.now(UTC)
        value = validate_override_value(feature_key, value)
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at is not None and expires_at <= now:
            raise BillingValidationError(
                f"Override expiry {expires_at.isoformat()} is not in the future",
                user_message="The override expiry must be in the future.",
            )

        await self._overrides.upsert(
            feature_key,
            value,
            expires_at=expires_at,
            reason=reason,
            created_by=self._actor,
        )
        await self._audit.log(
            BillingAuditAction.OVERRIDE_SET,
            occurred_at=now,
            feature_key=feature_key,
            value=value,
            expires_at=expires_at.isoformat() if expires_at else None,
            reason=reason,
        )
        row = await self._overrides.get_active(feature_key, now)
        assert row is not None  # noqa: S101
        return row

    async def remove_override(self, feature_key: str, *, now: datetime | None = None) -> None:
        """Delete an override.

        Raises
        ------
        BillingNotFoundError
            If the tenant has no override for *feature_key*.
        """
        deleted = await self._overrides.delete(feature_key)
        if not deleted:
            raise BillingNotFoundError(
                f"No override for {feature_key!r}",
                user_message="No override exists for this feature.",
            )
        await self._audit.log(
            BillingAuditAction.OVERRIDE_REMOVED,
            occurred_at=now or datetime.now(UTC),
            feature_key=feature_key,
        )
