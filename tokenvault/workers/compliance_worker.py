from __future__ import annotations

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from tokenvault.core.config import get_settings
from tokenvault.core.logging import configure_logging
from tokenvault.persistence.db import SessionLocal
from tokenvault.services.compliance.reports import ComplianceJobPayload, process_compliance_report
from tokenvault.services.maintenance import run_maintenance
from tokenvault.services.queueing import set_worker_heartbeat


logger = logging.getLogger(__name__)


async def generate_compliance_report(ctx, payload: dict) -> str | None:
    job_payload = ComplianceJobPayload.model_validate(payload)
    settings = get_settings()
    report = await process_compliance_report(
        job_payload.report_id,
        attempt=ctx.get("job_try", 1),
        max_tries=settings.compliance_max_tries,
    )
    return report.status if report else None


async def maintenance_sweep(ctx) -> dict:
    async with SessionLocal() as session:
        results = await run_maintenance(session)
    logger.info("maintenance_sweep_completed results=%s", results)
    return results


async def _heartbeat_loop() -> None:
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(settings.compliance_queue_name)
        except Exception as exc:  # noqa: BLE001 - heartbeat gaps surface on the health endpoint
            logger.warning("worker_heartbeat_failed queue=%s", settings.compliance_queue_name, exc_info=exc)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.compliance_queue_name
    # One spare arq try: a final attempt lost to a crash or shutdown still marks the report failed.
    max_tries = settings.compliance_max_tries + 1
    job_timeout = settings.compliance_job_timeout_s
    functions = [generate_compliance_report]
    # Hourly sweep at a fixed minute.
    cron_jobs = [cron(maintenance_sweep, minute=settings.maintenance_cron_minute, run_at_startup=False)]
    on_startup = _startup
    on_shutdown = _shutdown
