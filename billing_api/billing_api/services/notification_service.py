"""Fire-and-forget billing notifications.

Lifecycle transitions queue :class:`Notification` values; callers hand
them to :class:`NotificationService` only after the transaction that
produced them has committed.  Delivery is an HTTP POST to the configured
notification hook (the product's email/template service) run as a
background task.

INVARIANT: Notification delivery never blocks or fails a billing
operation.  Failures are logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class NotificationTemplate:
    """Well-known notification template identifiers."""

    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    TRIAL_ENDING = "trial_ending"
    TRIAL_ENDED = "trial_ended"


class Notification(BaseModel):
    """A queued notification for one tenant."""

    tenant_id: str
    template: str
    context: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class NotificationService:
    """Deliver notifications to the notification hook in the background.

    Parameters
    ----------
    url:
        Endpoint receiving ``POST`` requests.  Empty disables delivery.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created lazily if not provided.
    """

    def __init__(
        self,
        url: str = "",
        *,
        timeout: float = 5.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def enabled(self) -> bool:
        return bool(self._url)

    def notify(self, tenant_id: str, template: str, context: dict[str, Any] | None = None) -> asyncio.Task[None] | None:
        """Schedule delivery of one notification and return its task."""
        return self.send(Notification(tenant_id=tenant_id, template=template, context=context or {}))

    def send(self, notification: Notification) -> asyncio.Task[None] | None:
        if not self.enabled:
            logger.debug(
                "Notification hook disabled; dropping %s for tenant=%s",
                notification.template,
                notification.tenant_id,
            )
            return None

        task = asyncio.create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def send_all(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            self.send(notification)

    async def _deliver(self, notification: Notification) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await self._client.post(
                self._url,
                content=notification.model_dump_json(),
                headers={"Content-Type": "application/json"},
            )
            response.raise_for_status()
            logger.info(
                "Notification delivered: template=%s tenant=%s status=%d",
                notification.template,
                notification.tenant_id,
                response.status_code,
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification delivery failed: template=%s tenant=%s error=%s",
                notification.template,
                notification.tenant_id,
                exc,
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def close(self) -> None:
        """Drain pending deliveries and close the HTTP client if we own it."""
        await self.drain()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
