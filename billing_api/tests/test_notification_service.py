"""Tests for background notification delivery."""

from __future__ import annotations

import json

import httpx
import pytest

from billing_api.services.notification_service import Notification, NotificationService, NotificationTemplate


def _service(handler, url: str = "http://hooks.test/notify") -> NotificationService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NotificationService(url, http_client=client)


class TestNotificationService:
    @pytest.mark.asyncio
    async def test_delivers_json(self) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(202)

        service = _service(handler)
        task = service.notify("tenant-a", NotificationTemplate.PAYMENT_CONFIRMED, {"amount": "30.00"})
        assert task is not None
        await service.drain()

        assert received[0]["tenant_id"] == "tenant-a"
        assert received[0]["template"] == "payment_confirmed"
        assert received[0]["context"] == {"amount": "30.00"}

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        service = _service(handler)
        service.send(Notification(tenant_id="tenant-a", template=NotificationTemplate.PAYMENT_FAILED))
        await service.drain()

    @pytest.mark.asyncio
    async def test_connection_error_is_swallowed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        service = _service(handler)
        service.notify("tenant-a", NotificationTemplate.TRIAL_ENDED)
        await service.drain()

    @pytest.mark.asyncio
    async def test_disabled_without_url(self) -> None:
        service = NotificationService("")
        assert service.enabled is False
        assert service.notify("tenant-a", NotificationTemplate.TRIAL_ENDING) is None
        await service.close()

    @pytest.mark.asyncio
    async def test_send_all(self) -> None:
        templates: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            templates.append(json.loads(request.content)["template"])
            return httpx.Response(200)

        service = _service(handler)
        service.send_all(
            [
                Notification(tenant_id="t", template=NotificationTemplate.PAYMENT_CONFIRMED),
                Notification(tenant_id="t", template=NotificationTemplate.SUBSCRIPTION_CANCELLED),
            ]
        )
        await service.close()
        assert sorted(templates) == ["payment_confirmed", "subscription_cancelled"]
