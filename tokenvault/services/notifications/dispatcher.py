from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any, Protocol

import httpx

from tokenvault.core.config import get_settings
from tokenvault.services.resilience import retry_async
from tokenvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CHANNELS = ("report_ready", "report_failed", "system_alert", "security_alert")


@dataclass(frozen=True)
class DeliveryResult:
    # Summarize delivery attempts for callers that want to log or audit them.
    sent: bool
    status_code: int | None
    message: str


class NotificationDispatcher(Protocol):
    async def notify(self, channel: str, payload: dict[str, Any]) -> DeliveryResult:
        ...


class LoggingDispatcher:
    # Default dispatcher: notifications land in the service log.
    async def notify(self, channel: str, payload: dict[str, Any]) -> DeliveryResult:
        increment_counter(f"notifications_{channel}_total")
        level = logging.ERROR if channel == "system_alert" else logging.INFO
        logger.log(level, "notification channel=%s payload=%s", channel, json.dumps(payload, default=str))
        return DeliveryResult(sent=True, status_code=None, message="logged")


def build_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signatures for webhook payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class WebhookDispatcher:
    def __init__(self, *, url: str, secret: str, timeout_ms: int) -> None:
        self._url = url
        self._secret = secret
        self._timeout_s = timeout_ms / 1000.0

    async def notify(self, channel: str, payload: dict[str, Any]) -> DeliveryResult:
        # Signed delivery with retries; failures are reported, never raised.
        body = json.dumps(
            {"channel": channel, "payload": payload},
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-TokenVault-Signature": build_signature(self._secret, body),
            "X-TokenVault-Channel": channel,
        }

        async def _call() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.post(self._url, content=body, headers=headers)
            if response.status_code >= 500:
                response.raise_for_status()
            return response

        try:
            response = await retry_async(_call, label=f"notify:{channel}")
        except Exception as exc:  # noqa: BLE001 - notification failures are non-fatal
            increment_counter("notifications_failed_total")
            logger.warning("notification_send_failed channel=%s", channel, exc_info=exc)
            return DeliveryResult(sent=False, status_code=None, message=str(exc))
        if response.status_code >= 400:
            increment_counter("notifications_failed_total")
            return DeliveryResult(
                sent=False,
                status_code=response.status_code,
                message=f"Webhook responded with status {response.status_code}",
            )
        increment_counter(f"notifications_{channel}_total")
        return DeliveryResult(sent=True, status_code=response.status_code, message="delivered")


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        settings = get_settings()
        if settings.notify_webhook_url and settings.notify_webhook_secret:
            _dispatcher = WebhookDispatcher(
                url=settings.notify_webhook_url,
                secret=settings.notify_webhook_secret,
                timeout_ms=settings.notify_webhook_timeout_ms,
            )
        else:
            _dispatcher = LoggingDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    # Swap the dispatcher (tests, alternative transports); None restores the default.
    global _dispatcher
    _dispatcher = dispatcher


async def notify(channel: str, payload: dict[str, Any]) -> DeliveryResult:
    return await get_dispatcher().notify(channel, payload)
