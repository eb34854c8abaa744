from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Protocol

from tokenvault.core.errors import AuditQueueError
from tokenvault.services.queueing import get_redis_pool


logger = logging.getLogger(__name__)

AUDIT_JOB_NAME = "process_audit_log"


class AuditQueue(Protocol):
    async def enqueue(self, queue_name: str, payload: dict[str, Any], priority: int) -> str:
        ...


class ArqAuditQueue:
    # Durable queue: one arq queue per priority lane, drained by dedicated workers.
    async def enqueue(self, queue_name: str, payload: dict[str, Any], priority: int) -> str:
        job_id = str(payload["audit_id"])
        try:
            redis = await get_redis_pool()
            job = await redis.enqueue_job(
                AUDIT_JOB_NAME,
                {**payload, "priority": priority},
                _job_id=job_id,
                _queue_name=queue_name,
            )
        except Exception as exc:  # noqa: BLE001 - normalized for the caller
            raise AuditQueueError(
                f"Audit enqueue to {queue_name} failed: {type(exc).__name__}",
                context={"queue": queue_name, "audit_id": job_id},
            ) from exc
        # When a job id already exists, arq returns None; keep tracing with the same id.
        return job.job_id if job else job_id


class InlineAuditQueue:
    # Runs the worker body in-process; used by tests and single-process dev setups.
    def __init__(self, handler: Callable[[dict[str, Any]], Awaitable[None]]) -> None:
        self._handler = handler

    async def enqueue(self, queue_name: str, payload: dict[str, Any], priority: int) -> str:
        await self._handler({**payload, "priority": priority})
        return str(payload["audit_id"])

