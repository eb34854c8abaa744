from __future__ import annotations

from tokenvault.services.notifications.dispatcher import (
    CHANNELS,
    DeliveryResult,
    LoggingDispatcher,
    NotificationDispatcher,
    WebhookDispatcher,
    get_dispatcher,
    notify,
    set_dispatcher,
)


__all__ = [
    "CHANNELS",
    "DeliveryResult",
    "LoggingDispatcher",
    "NotificationDispatcher",
    "WebhookDispatcher",
    "get_dispatcher",
    "notify",
    "set_dispatcher",
]
