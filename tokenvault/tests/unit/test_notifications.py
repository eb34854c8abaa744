from __future__ import annotations

import json

import httpx
import pytest

from tokenvault.services.notifications import LoggingDispatcher, WebhookDispatcher
from tokenvault.services.notifications.dispatcher import build_signature
from tokenvault.services.telemetry import counters_snapshot


def _patch_client(monkeypatch, handler) -> None:
    original = httpx.AsyncClient

    class _MockClient(original):
        def __init__(self, **kwargs) -> None:
            super().__init__(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", _MockClient)


@pytest.mark.asyncio
async def test_logging_dispatcher_counts_channel() -> None:
    result = await LoggingDispatcher().notify("report_ready", {"report_id": "r1"})
    assert result.sent is True
    assert counters_snapshot()["notifications_report_ready_total"] == 1


@pytest.mark.asyncio
async def test_webhook_dispatcher_signs_payload(monkeypatch) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    _patch_client(monkeypatch, handler)
    dispatcher = WebhookDispatcher(url="https://hooks.example.test/notify", secret="s3cret", timeout_ms=1000)
    result = await dispatcher.notify("security_alert", {"alert_id": "a1"})

    assert result.sent is True
    request = seen[0]
    body = request.content
    assert request.headers["X-TokenVault-Signature"] == build_signature("s3cret", body)
    assert request.headers["X-TokenVault-Channel"] == "security_alert"
    assert json.loads(body) == {"channel": "security_alert", "payload": {"alert_id": "a1"}}


@pytest.mark.asyncio
async def test_webhook_dispatcher_reports_client_errors(monkeypatch) -> None:
    _patch_client(monkeypatch, lambda request: httpx.Response(400))
    dispatcher = WebhookDispatcher(url="https://hooks.example.test/notify", secret="s3cret", timeout_ms=1000)
    result = await dispatcher.notify("report_failed", {"report_id": "r1"})
    assert result.sent is False
    assert result.status_code == 400
    assert counters_snapshot()["notifications_failed_total"] == 1
