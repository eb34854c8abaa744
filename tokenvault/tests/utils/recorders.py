from __future__ import annotations

from typing import Any

from tokenvault.services.audit.pipeline import run_inline_audit_job
from tokenvault.services.notifications import DeliveryResult


class RecordingDispatcher:
    # Capture notifications instead of logging or posting them.
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, channel: str, payload: dict[str, Any]) -> DeliveryResult:
        self.sent.append((channel, payload))
        return DeliveryResult(sent=True, status_code=None, message="recorded")

    def channel(self, name: str) -> list[dict[str, Any]]:
        return [payload for channel, payload in self.sent if channel == name]


class RecordingAuditQueue:
    # Record lane selection; optionally persist through the inline worker body as well.
    def __init__(self, *, persist: bool = False) -> None:
        self.persist = persist
        self.jobs: list[tuple[str, dict[str, Any], int]] = []

    async def enqueue(self, queue_name: str, payload: dict[str, Any], priority: int) -> str:
        self.jobs.append((queue_name, payload, priority))
        if self.persist:
            await run_inline_audit_job({**payload, "priority": priority})
        return str(payload["audit_id"])

    def operations(self) -> list[str]:
        return [payload["operation"] for _queue, payload, _priority in self.jobs]


class FailingAuditQueue:
    async def enqueue(self, queue_name: str, payload: dict[str, Any], priority: int) -> str:
        raise ConnectionError("redis unavailable")
