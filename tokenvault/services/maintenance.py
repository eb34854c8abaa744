from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Literal, get_args

from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import get_settings
from tokenvault.core.errors import TokenVaultError
from tokenvault.domain.values import RequestContext
from tokenvault.services.audit.pipeline import archive_old_logs
from tokenvault.services.compliance.reports import cleanup_expired_reports, fail_stale_reports
from tokenvault.services.retention import execute_retention_policies
from tokenvault.services.security.alerts import auto_resolve_expired
from tokenvault.services.tokenization import cleanup_expired_tokens
from tokenvault.services.vaults import list_vaults_needing_rotation, rotate_key


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "cleanup_expired_tokens",
    "auto_resolve_alerts",
    "archive_audit_logs",
    "apply_retention_policies",
    "cleanup_expired_reports",
    "fail_stale_reports",
    "rotate_due_keys",
]
MAINTENANCE_TASKS: tuple[str, ...] = get_args(MaintenanceTask)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def expire_tokens(session: AsyncSession, *, now: datetime) -> int:
    return await cleanup_expired_tokens(session, now=now, context=RequestContext.system())


async def resolve_stale_alerts(session: AsyncSession, *, now: datetime) -> int:
    return await auto_resolve_expired(session, now=now)


async def archive_audit_logs(session: AsyncSession, *, now: datetime) -> int:
    settings = get_settings()
    cutoff = now - timedelta(days=settings.audit_archive_after_days)
    return await archive_old_logs(session, cutoff=cutoff, batch_size=settings.audit_archive_batch_size)


async def apply_retention_policies(session: AsyncSession, *, now: datetime) -> int:
    return sum((await execute_retention_policies(session, now=now)).values())


async def remove_expired_reports(session: AsyncSession, *, now: datetime) -> int:
    return await cleanup_expired_reports(session, now=now)


async def fail_abandoned_reports(session: AsyncSession, *, now: datetime) -> int:
    return await fail_stale_reports(session, now=now)


async def rotate_due_keys(session: AsyncSession, *, now: datetime) -> int:
    vault_ids = [vault.id for vault in await list_vaults_needing_rotation(session, now=now)]
    rotated = 0
    for vault_id in vault_ids:
        try:
            await rotate_key(session, vault_id, context=RequestContext.system())
            rotated += 1
        except TokenVaultError as exc:
            # A vault that cannot rotate now is picked up again by the next sweep.
            logger.error("scheduled_key_rotation_failed vault_id=%s code=%s", vault_id, exc.code, exc_info=exc)
    return rotated


_TASKS: dict[str, Callable[..., Awaitable[int]]] = {
    "cleanup_expired_tokens": expire_tokens,
    "auto_resolve_alerts": resolve_stale_alerts,
    "archive_audit_logs": archive_audit_logs,
    "apply_retention_policies": apply_retention_policies,
    "cleanup_expired_reports": remove_expired_reports,
    "fail_stale_reports": fail_abandoned_reports,
    "rotate_due_keys": rotate_due_keys,
}


async def run_task(session: AsyncSession, task: str, *, now: datetime | None = None) -> int:
    handler = _TASKS.get(task)
    if handler is None:
        raise ValueError(f"Unknown maintenance task: {task}")
    affected = await handler(session, now=now or _utc_now())
    logger.info("maintenance_task_completed task=%s affected=%s", task, affected)
    return affected


async def run_maintenance(
    session: AsyncSession,
    *,
    tasks: tuple[str, ...] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    # Tasks run in order; a failing task is reported and the sweep continues.
    current = now or _utc_now()
    results: dict[str, Any] = {}
    for task in tasks or MAINTENANCE_TASKS:
        try:
            results[task] = await run_task(session, task, now=current)
        except Exception as exc:  # noqa: BLE001 - sweep reports per-task failures
            await session.rollback()
            logger.exception("maintenance_task_failed task=%s", task, exc_info=exc)
            results[task] = {"error": str(exc)}
    return results
