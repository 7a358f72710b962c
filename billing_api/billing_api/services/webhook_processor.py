"""Webhook event processor.

Turns at-least-once provider deliveries into exactly-once billing state
transitions:

1. Verify the signature (unverifiable deliveries are rejected without being
   recorded) and normalize the payload into a :data:`ProviderEvent`.
2. Resolve the owning tenant.
3. Dedup check: a ``processed`` record for ``(tenant, provider, event id)``
   acknowledges immediately.  Otherwise a ``pending`` record is inserted
   (or the existing ``pending``/``failed`` one is reused) and committed.
4. Dispatch to the lifecycle manager in its own transaction, bounded by
   the handler time budget and retried on transient errors.  The handler
   and ``mark_processed`` commit together.
5. On failure, mark the record ``failed`` in a fresh transaction, append a
   ``provider_event_failed`` audit event and still acknowledge.  Failed
   records are picked up by :meth:`WebhookEventProcessor.reprocess_failed`.

The lifecycle idempotency key for a provider event is
``"<provider>:<provider_event_id>"`` so a handler that committed but whose
acknowledgement was lost replays instead of applying twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

from billing_engine.errors import BillingError, StaleEventError
from billing_engine.models.events import (
    AuthorizationCreated,
    OrderApproved,
    PaymentFailed,
    PaymentSucceeded,
    Provider,
    ProviderEvent,
    SubscriptionCancelled,
    TrialWillEnd,
    UnknownEvent,
    WebhookResult,
    WebhookStatus,
)
from billing_engine.models.subscription import CancelMode, TransitionResult
from billing_engine.plans.catalog import PlanCatalog
from billing_engine.retry import async_retry_with_backoff
from billing_engine.state.database import session_scope, validate_tenant_id
from billing_engine.state.repository import BillingScanRepository, ProviderEventRepository
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_api.config import APISettings
from billing_api.services.audit_service import BillingAuditAction, BillingAuditService
from billing_api.services.lifecycle_service import SubscriptionLifecycleManager
from billing_api.services.notification_service import Notification, NotificationService
from billing_api.services.provider_adapters import ProviderAdapter, WebhookRejectedError, build_adapters

logger = logging.getLogger(__name__)


def idempotency_key_for(provider: str, provider_event_id: str) -> str:
    return f"{provider}:{provider_event_id}"


class WebhookEventProcessor:
    """Verify, deduplicate and apply provider webhook deliveries.

    Parameters
    ----------
    session_factory:
        Factory for short-lived sessions; each processing step commits
        independently.
    catalog:
        Plan catalog handed to the lifecycle manager.
    settings:
        Secrets, time budget and retry policy.
    notifier:
        Receives notifications after the handler transaction commits.
    adapters:
        Optional provider adapters keyed by :class:`Provider`.  Built from
        *settings* when omitted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        settings: APISettings,
        notifier: NotificationService,
        adapters: Mapping[Provider, ProviderAdapter] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._catalog = catalog
        self._settings = settings
        self._notifier = notifier
        self._adapters = dict(adapters) if adapters is not None else build_adapters(settings)
        self._retry_config = settings.retry_config()

    # -- ingestion -----------------------------------------------------------

    async def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Process one delivery and return the acknowledgement.

        Raises
        ------
        WebhookRejectedError
            If the provider is unsupported, the signature does not verify or
            the payload is malformed.  Nothing is recorded in that case.
        """
        try:
            provider_enum = Provider(provider)
        except ValueError as exc:
            raise WebhookRejectedError(f"Unsupported provider {provider!r}", status_code=400) from exc

        adapter = self._adapters.get(provider_enum)
        if adapter is None:
            raise WebhookRejectedError(f"Provider {provider!r} is not configured", status_code=400)

        payload = adapter.verify(raw_body, headers)
        try:
            event = adapter.normalize(payload, headers)
        except ValidationError as exc:
            raise WebhookRejectedError("Malformed provider event", status_code=400) from exc

        tenant_id = await self._resolve_tenant(event)
        if tenant_id is None:
            logger.warning(
                "Provider event %s:%s (%s) has no resolvable tenant; acknowledging without processing",
                event.provider.value,
                event.provider_event_id,
                event.event_type,
            )
            return WebhookResult(
                status=WebhookStatus.IGNORED,
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                event_kind=event.kind,
                detail="unknown_tenant",
            )

        return await self._process(event, tenant_id, payload)

    async def _resolve_tenant(self, event: ProviderEvent) -> str | None:
        if event.tenant_id:
            try:
                return validate_tenant_id(event.tenant_id)
            except ValueError:
                logger.warning("Ignoring malformed tenant hint %r on %s", event.tenant_id, event.provider_event_id)

        if not (event.provider_customer_id or event.provider_subscription_id):
            return None
        async with session_scope(self._session_factory) as session:
            return await BillingScanRepository(session).find_tenant_by_provider_reference(
                event.provider.value,
                customer_id=event.provider_customer_id,
                subscription_id=event.provider_subscription_id,
            )

    # -- processing ----------------------------------------------------------

    def _result(
        self,
        status: WebhookStatus,
        event: ProviderEvent,
        tenant_id: str,
        detail: str | None = None,
    ) -> WebhookResult:
        return WebhookResult(
            status=status,
            provider=event.provider,
            provider_event_id=event.provider_event_id,
            event_kind=event.kind,
            tenant_id=tenant_id,
            detail=detail,
        )

    async def _process(self, event: ProviderEvent, tenant_id: str, raw_payload: dict[str, Any] | None) -> WebhookResult:
        provider = event.provider.value

        async with session_scope(self._session_factory, tenant_id) as session:
            events = ProviderEventRepository(session, tenant_id)
            existing = await events.get(provider, event.provider_event_id)
            if existing is not None and existing.processing_status == "processed":
                logger.info("Duplicate delivery of %s:%s acknowledged", provider, event.provider_event_id)
                return self._result(WebhookStatus.DUPLICATE, event, tenant_id)
            record = await events.record_received(
                provider=provider,
                provider_event_id=event.provider_event_id,
                event_type=event.event_type,
                raw_payload=raw_payload,
            )
            record_id = record.id

        if isinstance(event, UnknownEvent):
            return await self._acknowledge_unknown(event, tenant_id, record_id)

        try:
            transition, notifications = await asyncio.wait_for(
                async_retry_with_backoff(
                    lambda: self._apply(event, tenant_id, record_id),
                    self._retry_config,
                    operation=f"webhook {provider}:{event.provider_event_id}",
                ),
                timeout=self._settings.webhook_handler_timeout_seconds,
            )
        except StaleEventError as exc:
            return await self._acknowledge_stale(event, tenant_id, record_id, exc)
        except Exception as exc:
            return await self._record_failure(event, tenant_id, record_id, exc)

        if transition is None:
            logger.info(
                "Provider cancellation %s:%s for already-cancelled subscription acknowledged",
                provider,
                event.provider_event_id,
            )
            return self._result(WebhookStatus.IGNORED, event, tenant_id, detail="already_cancelled")

        self._notifier.send_all(notifications)
        return self._result(
            WebhookStatus.PROCESSED,
            event,
            tenant_id,
            detail="replayed" if transition.replayed else transition.event_type,
        )

    async def _apply(
        self,
        event: ProviderEvent,
        tenant_id: str,
        record_id: int,
    ) -> tuple[TransitionResult | None, list[Notification]]:
        """Run the handler and mark the record processed in one transaction.

        A provider cancellation for a subscription that is already cancelled
        (the echo of an API cancel) is marked processed with no transition
        and returns ``(None, [])``.
        """
        provider = event.provider.value
        async with session_scope(self._session_factory, tenant_id) as session:
            events = ProviderEventRepository(session, tenant_id)
            manager = SubscriptionLifecycleManager(
                session,
                tenant_id,
                self._catalog,
                actor=f"provider:{provider}",
            )
            if isinstance(event, SubscriptionCancelled) and await manager.is_cancelled():
                await events.mark_processed(record_id, note="subscription already cancelled")
                return None, []
            transition = await self._dispatch(manager, event)
            await events.mark_processed(record_id)
            notifications = manager.drain_notifications()
        return transition, notifications

    async def _dispatch(self, manager: SubscriptionLifecycleManager, event: ProviderEvent) -> TransitionResult:
        key = idempotency_key_for(event.provider.value, event.provider_event_id)
        now = event.occurred_at

        if isinstance(event, PaymentSucceeded):
            return await manager.record_payment(
                amount=event.amount,
                currency=event.currency,
                payment_reference=event.provider_event_id,
                idempotency_key=key,
                now=now,
            )
        if isinstance(event, PaymentFailed):
            return await manager.record_payment_failure(
                amount=event.amount,
                currency=event.currency,
                failure_reason=event.failure_reason,
                payment_reference=event.provider_event_id,
                idempotency_key=key,
                now=now,
            )
        if isinstance(event, OrderApproved):
            return await manager.record_billing_event(
                BillingAuditAction.ORDER_APPROVED,
                amount=event.amount,
                metadata={"order_id": event.order_id},
                idempotency_key=key,
                now=now,
            )
        if isinstance(event, AuthorizationCreated):
            return await manager.record_billing_event(
                BillingAuditAction.AUTHORIZATION_CREATED,
                amount=event.amount,
                metadata={"authorization_id": event.authorization_id},
                idempotency_key=key,
                now=now,
            )
        if isinstance(event, SubscriptionCancelled):
            return await manager.cancel(
                CancelMode.IMMEDIATE,
                reason=event.reason or "provider_cancelled",
                idempotency_key=key,
                now=now,
            )
        if isinstance(event, TrialWillEnd):
            return await manager.record_billing_event(
                BillingAuditAction.TRIAL_WILL_END,
                metadata={"trial_end": event.trial_end.isoformat() if event.trial_end else None},
                idempotency_key=key,
                now=now,
            )
        raise TypeError(f"No handler for event kind {event.kind!r}")

    async def _acknowledge_unknown(self, event: UnknownEvent, tenant_id: str, record_id: int) -> WebhookResult:
        async with session_scope(self._session_factory, tenant_id) as session:
            await BillingAuditService(session, tenant_id=tenant_id, actor=f"provider:{event.provider.value}").log(
                BillingAuditAction.PROVIDER_EVENT_IGNORED,
                provider=event.provider.value,
                provider_event_id=event.provider_event_id,
                provider_event_type=event.event_type,
            )
            await ProviderEventRepository(session, tenant_id).mark_processed(record_id, note="unrecognized event type")
        logger.info("Unrecognized provider event %s (%s) recorded as no-op", event.provider_event_id, event.event_type)
        return self._result(WebhookStatus.IGNORED, event, tenant_id, detail="unrecognized_event_type")

    async def _acknowledge_stale(
        self,
        event: ProviderEvent,
        tenant_id: str,
        record_id: int,
        exc: StaleEventError,
    ) -> WebhookResult:
        async with session_scope(self._session_factory, tenant_id) as session:
            await BillingAuditService(session, tenant_id=tenant_id, actor=f"provider:{event.provider.value}").log(
                BillingAuditAction.PROVIDER_EVENT_STALE,
                provider=event.provider.value,
                provider_event_id=event.provider_event_id,
                provider_event_type=event.event_type,
                event_occurred_at=event.occurred_at.isoformat(),
            )
            await ProviderEventRepository(session, tenant_id).mark_processed(record_id, note=exc.detail[:2000])
        logger.info("Stale provider event %s skipped: %s", event.provider_event_id, exc.detail)
        return self._result(WebhookStatus.STALE, event, tenant_id, detail="stale_event")

    async def _record_failure(
        self,
        event: ProviderEvent,
        tenant_id: str,
        record_id: int,
        exc: BaseException,
    ) -> WebhookResult:
        error = exc.detail if isinstance(exc, BillingError) else f"{type(exc).__name__}: {exc}"
        async with session_scope(self._session_factory, tenant_id) as session:
            marked = await ProviderEventRepository(session, tenant_id).mark_failed(record_id, error)
            if marked:
                await BillingAuditService(
                    session, tenant_id=tenant_id, actor=f"provider:{event.provider.value}"
                ).log(
                    BillingAuditAction.PROVIDER_EVENT_FAILED,
                    provider=event.provider.value,
                    provider_event_id=event.provider_event_id,
                    provider_event_type=event.event_type,
                    error=error[:500],
                )

        if not marked:
            # A concurrent delivery of the same event completed first.
            logger.info("Provider event %s already processed by a concurrent delivery", event.provider_event_id)
            return self._result(WebhookStatus.DUPLICATE, event, tenant_id)

        logger.error(
            "Provider event %s:%s (%s) failed for tenant=%s: %s",
            event.provider.value,
            event.provider_event_id,
            event.event_type,
            tenant_id,
            error,
            exc_info=not isinstance(exc, BillingError),
        )
        return self._result(WebhookStatus.FAILED, event, tenant_id, detail=error[:500])

    # -- reprocessing --------------------------------------------------------

    async def reprocess_failed(self, *, limit: int | None = None) -> list[WebhookResult]:
        """Re-run handlers for ``failed`` records still under the retry cap.

        Events are rebuilt from the stored raw payload by the provider's
        adapter; signatures are not re-verified since the record was
        verified on first receipt.
        """
        batch = limit or self._settings.webhook_reprocess_batch_size
        async with session_scope(self._session_factory) as session:
            records = await BillingScanRepository(session).list_failed_provider_events(
                max_retries=self._settings.webhook_max_reprocess_attempts,
                limit=batch,
            )
            pending = [
                (record.id, record.tenant_id, record.provider, record.provider_event_id, record.raw_payload)
                for record in records
            ]

        results: list[WebhookResult] = []
        for record_id, tenant_id, provider, provider_event_id, raw_payload in pending:
            event = self._rebuild(provider, raw_payload)
            if event is None:
                # Count the attempt so the record ages out at the retry cap.
                async with session_scope(self._session_factory, tenant_id) as session:
                    await ProviderEventRepository(session, tenant_id).mark_failed(
                        record_id, "Stored payload cannot be rebuilt into a provider event"
                    )
                continue
            # Header-derived ids are not in the stored payload; keep the recorded one.
            event = event.model_copy(update={"provider_event_id": provider_event_id})
            results.append(await self._process(event, tenant_id, raw_payload))

        if results:
            logger.info(
                "Reprocessed %d failed provider events: %s",
                len(results),
                {status.value: sum(1 for r in results if r.status == status) for status in WebhookStatus},
            )
        return results

    def _rebuild(self, provider: str, raw_payload: dict[str, Any] | None) -> ProviderEvent | None:
        adapter = self._adapters.get(Provider(provider))
        if adapter is None or raw_payload is None:
            logger.warning("Cannot rebuild %s event without adapter or payload", provider)
            return None
        try:
            return adapter.normalize(raw_payload, {})
        except (ValidationError, WebhookRejectedError) as exc:
            logger.warning("Stored %s payload no longer normalizes: %s", provider, exc)
            return None

