from __future__ import annotations

import asyncio
import logging
from datetime import datetime

from arq.connections import RedisSettings

from tokenvault.core.config import get_settings
from tokenvault.core.logging import configure_logging
from tokenvault.persistence.db import SessionLocal
from tokenvault.services.audit.pipeline import AuditJobPayload, archive_old_logs
from tokenvault.services.audit.pipeline import process_audit_log as run_audit_pipeline
from tokenvault.services.queueing import set_worker_heartbeat


logger = logging.getLogger(__name__)


async def process_audit_log(ctx, payload: dict) -> str | None:
    # Validate in the worker so malformed payloads fail loudly instead of persisting junk.
    job_payload = AuditJobPayload.model_validate(payload)
    settings = get_settings()
    audit_log = await run_audit_pipeline(
        job_payload,
        attempt=ctx.get("job_try", 1),
        max_tries=settings.audit_max_tries,
    )
    return audit_log.id if audit_log else None


async def archive_audit_logs(ctx, cutoff: str) -> int:
    settings = get_settings()
    async with SessionLocal() as session:
        return await archive_old_logs(
            session,
            cutoff=datetime.fromisoformat(cutoff),
            batch_size=settings.audit_archive_batch_size,
        )


async def _heartbeat_loop(queue_name: str) -> None:
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(queue_name)
        except Exception as exc:  # noqa: BLE001 - heartbeat gaps surface on the health endpoint
            logger.warning("worker_heartbeat_failed queue=%s", queue_name, exc_info=exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


def _lifecycle(queue_name: str):
    async def _startup(ctx) -> None:
        configure_logging()
        ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop(queue_name))
        logger.info("audit_worker_started queue=%s", queue_name)

    async def _shutdown(ctx) -> None:
        task = ctx.get("heartbeat_task")
        if task:
            task.cancel()

    return _startup, _shutdown


_settings = get_settings()
_critical_startup, _critical_shutdown = _lifecycle(_settings.audit_queue_critical)
_high_startup, _high_shutdown = _lifecycle(_settings.audit_queue_high)
_default_startup, _default_shutdown = _lifecycle(_settings.audit_queue_default)
# One spare arq try: a final attempt lost to a crash or shutdown still reaches escalation.
_ARQ_MAX_TRIES = _settings.audit_max_tries + 1


class CriticalWorkerSettings:
    # arq CLI: `arq tokenvault.workers.audit_worker.CriticalWorkerSettings`
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    queue_name = _settings.audit_queue_critical
    max_tries = _ARQ_MAX_TRIES
    job_timeout = _settings.audit_job_timeout_s
    functions = [process_audit_log]
    on_startup = _critical_startup
    on_shutdown = _critical_shutdown


class HighWorkerSettings:
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    queue_name = _settings.audit_queue_high
    max_tries = _ARQ_MAX_TRIES
    job_timeout = _settings.audit_job_timeout_s
    functions = [process_audit_log]
    on_startup = _high_startup
    on_shutdown = _high_shutdown


class WorkerSettings:
    # Default lane also drains archival jobs.
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    queue_name = _settings.audit_queue_default
    max_tries = _ARQ_MAX_TRIES
    job_timeout = _settings.audit_job_timeout_s
    functions = [process_audit_log, archive_audit_logs]
    on_startup = _default_startup
    on_shutdown = _default_shutdown
