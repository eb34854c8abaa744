from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import uuid4

from arq import Retry
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import get_settings
from tokenvault.core.errors import AuditPersistError, AuditQueueError, TokenVaultError
from tokenvault.domain.events import DomainEvent
from tokenvault.domain.models import AuditLog
from tokenvault.domain.values import RequestContext
from tokenvault.persistence.db import SessionLocal
from tokenvault.persistence.repos import audit as audit_repo
from tokenvault.services.audit.context import sanitize_metadata
from tokenvault.services.audit.queue import ArqAuditQueue, AuditQueue, InlineAuditQueue
from tokenvault.services.audit.risk import (
    calculate_risk_level,
    compliance_reference,
    is_pci_relevant,
    select_queue,
)
from tokenvault.services.notifications import notify
from tokenvault.services.queueing import get_redis_pool
from tokenvault.services.resilience import backoff_seconds, job_time_budget
from tokenvault.services.security.detector import analyze_security_patterns
from tokenvault.services.telemetry import increment_counter, record_audit_metrics


logger = logging.getLogger(__name__)

ARCHIVE_JOB_NAME = "archive_audit_logs"


class AuditJobPayload(BaseModel):
    # Prepared audit record handed from the request path to the worker.
    audit_id: str
    operation: str
    result: str
    vault_id: str | None = None
    token_id: str | None = None
    error_message: str | None = None
    user_id: str | None = None
    api_key_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    request_metadata: dict[str, Any] | None = None
    response_metadata: dict[str, Any] | None = None
    processing_time_ms: int | None = None
    risk_level: str
    pci_relevant: bool
    compliance_reference: str | None = None
    created_at: datetime
    queue_name: str
    priority: int = 1


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


_queue: AuditQueue | None = None


def get_audit_queue() -> AuditQueue:
    global _queue
    if _queue is None:
        settings = get_settings()
        if settings.audit_execution_mode.lower() == "inline":
            _queue = InlineAuditQueue(run_inline_audit_job)
        else:
            _queue = ArqAuditQueue()
    return _queue


def set_audit_queue(queue: AuditQueue | None) -> None:
    # Swap the queue implementation; None re-reads the execution mode on next use.
    global _queue
    _queue = queue


def prepare_audit_record(
    *,
    operation: str,
    result: str,
    context: RequestContext | None,
    vault_id: str | None = None,
    token_id: str | None = None,
    error_message: str | None = None,
    request_metadata: dict[str, Any] | None = None,
    response_metadata: dict[str, Any] | None = None,
    processing_time_ms: int | None = None,
    risk_level: str | None = None,
    recent_ip_failures: int = 0,
    events: Sequence[DomainEvent] | None = None,
    occurred_at: datetime | None = None,
    audit_id: str | None = None,
) -> AuditJobPayload:
    # Pure preparation: ids, defaults, risk and PCI flags; no I/O.
    settings = get_settings()
    ctx = context or RequestContext()
    resolved_id = audit_id or str(uuid4())
    created_at = occurred_at or _utc_now()
    level = calculate_risk_level(
        operation,
        result,
        recent_ip_failures=recent_ip_failures,
        failure_threshold=settings.audit_risk_failure_threshold,
        floor=risk_level,
    )
    pci = is_pci_relevant(operation)
    response = dict(response_metadata or {})
    if events:
        response["events"] = [event.to_payload() for event in events]
    selection = select_queue(risk_level=level, result=result, pci_relevant=pci, settings=settings)
    return AuditJobPayload(
        audit_id=resolved_id,
        operation=operation,
        result=result,
        vault_id=vault_id,
        token_id=token_id,
        error_message=error_message,
        user_id=ctx.user_id,
        api_key_id=ctx.api_key_id,
        session_id=ctx.session_id,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        request_id=ctx.request_id,
        request_metadata=sanitize_metadata(request_metadata) if request_metadata else None,
        response_metadata=sanitize_metadata(response) if response else None,
        processing_time_ms=processing_time_ms,
        risk_level=level,
        pci_relevant=pci,
        compliance_reference=compliance_reference(resolved_id, created_at) if pci else None,
        created_at=created_at,
        queue_name=selection.queue_name,
        priority=selection.priority,
    )


async def _recent_ip_failures(ip_address: str | None, now: datetime) -> int:
    settings = get_settings()
    if not ip_address or not settings.audit_risk_history_enabled:
        return 0
    try:
        async with SessionLocal() as session:
            return await audit_repo.count_failures_from_ip(
                session,
                ip_address=ip_address,
                since=now - timedelta(hours=1),
                until=now,
            )
    except SQLAlchemyError as exc:
        # History only escalates risk; scoring falls back to the event alone.
        logger.warning("audit_risk_history_unavailable ip=%s", ip_address, exc_info=exc)
        return 0


async def log_event(
    *,
    operation: str,
    result: str = "success",
    context: RequestContext | None = None,
    vault_id: str | None = None,
    token_id: str | None = None,
    error_message: str | None = None,
    request_metadata: dict[str, Any] | None = None,
    response_metadata: dict[str, Any] | None = None,
    processing_time_ms: int | None = None,
    risk_level: str | None = None,
    events: Sequence[DomainEvent] | None = None,
) -> str:
    # Enqueue only; persistence happens on the worker. Never raises into the caller.
    now = _utc_now()
    ip_address = context.ip_address if context else None
    recent_failures = await _recent_ip_failures(ip_address, now)
    payload = prepare_audit_record(
        operation=operation,
        result=result,
        context=context,
        vault_id=vault_id,
        token_id=token_id,
        error_message=error_message,
        request_metadata=request_metadata,
        response_metadata=response_metadata,
        processing_time_ms=processing_time_ms,
        risk_level=risk_level,
        recent_ip_failures=recent_failures,
        events=events,
        occurred_at=now,
    )
    try:
        await get_audit_queue().enqueue(payload.queue_name, payload.model_dump(mode="json"), payload.priority)
        increment_counter("audit_events_enqueued_total")
    except Exception as exc:  # noqa: BLE001 - audit must not fail the originating operation
        increment_counter("audit_enqueue_failures_total")
        logger.error(
            "audit_enqueue_failed audit_id=%s operation=%s queue=%s",
            payload.audit_id,
            operation,
            payload.queue_name,
            exc_info=exc,
        )
        failure = exc if isinstance(exc, AuditQueueError) else AuditQueueError(
            f"Audit enqueue failed: {type(exc).__name__}",
            context={"queue": payload.queue_name, "audit_id": payload.audit_id},
        )
        await _escalate(payload, failure)
    return payload.audit_id


async def _escalate(payload: AuditJobPayload, failure: TokenVaultError, *, attempts: int | None = None) -> None:
    kind = failure.code.lower()
    # Audit loss is compliance-critical: route to operators instead of dropping silently.
    try:
        await notify(
            "system_alert",
            {
                "type": kind,
                "audit_id": payload.audit_id,
                "operation": payload.operation,
                "result": payload.result,
                "vault_id": payload.vault_id,
                "compliance_reference": payload.compliance_reference,
                "attempts": attempts,
                "error_code": failure.code,
                "error": failure.message,
            },
        )
    except Exception as exc:  # noqa: BLE001 - last-resort path logs instead of raising
        logger.critical("audit_escalation_failed audit_id=%s kind=%s", payload.audit_id, kind, exc_info=exc)


async def persist_audit_record(session: AsyncSession, payload: AuditJobPayload) -> AuditLog:
    # Idempotent by id so worker retries never duplicate rows.
    existing = await audit_repo.get_log(session, payload.audit_id)
    if existing is not None:
        return existing
    audit_log = AuditLog(
        id=payload.audit_id,
        vault_id=payload.vault_id,
        token_id=payload.token_id,
        operation=payload.operation,
        result=payload.result,
        error_message=payload.error_message,
        user_id=payload.user_id,
        api_key_id=payload.api_key_id,
        session_id=payload.session_id,
        ip_address=payload.ip_address,
        user_agent=payload.user_agent,
        request_id=payload.request_id,
        request_metadata=payload.request_metadata,
        response_metadata=payload.response_metadata,
        processing_time_ms=payload.processing_time_ms,
        risk_level=payload.risk_level,
        pci_relevant=payload.pci_relevant,
        compliance_reference=payload.compliance_reference,
        created_at=payload.created_at,
        processed_at=_utc_now(),
    )
    session.add(audit_log)
    await session.commit()
    return audit_log


async def process_audit_log(payload: AuditJobPayload, *, attempt: int, max_tries: int) -> AuditLog | None:
    # Shared by the arq worker and inline mode: persist, detect, count, maybe archive.
    settings = get_settings()
    # One deadline for the whole job, ahead of arq's job_timeout.
    deadline = asyncio.get_running_loop().time() + job_time_budget(settings.audit_job_timeout_s)
    async with SessionLocal() as session:
        try:
            async with asyncio.timeout_at(deadline):
                audit_log = await persist_audit_record(session, payload)
        except Exception as exc:  # noqa: BLE001 - any persist failure is retried then escalated
            await session.rollback()
            if attempt < max_tries:
                logger.warning(
                    "audit_persist_retry audit_id=%s attempt=%s max_tries=%s",
                    payload.audit_id,
                    attempt,
                    max_tries,
                    exc_info=exc,
                )
                raise Retry(defer=backoff_seconds(settings.audit_retry_backoff_s, attempt)) from exc
            failure = AuditPersistError(
                f"Audit record not persisted after {attempt} attempts: {type(exc).__name__}",
                context={"audit_id": payload.audit_id, "attempts": attempt},
            )
            increment_counter("audit_persist_failures_total")
            logger.error("audit_persist_failed audit_id=%s attempts=%s", payload.audit_id, attempt, exc_info=exc)
            await _escalate(payload, failure, attempts=attempt)
            return None

        try:
            async with asyncio.timeout_at(deadline):
                await analyze_security_patterns(session, audit_log)
        except Exception as exc:  # noqa: BLE001 - the record is durable; detection failures are logged
            await session.rollback()
            increment_counter("security_detector_failures_total")
            logger.exception("security_detector_failed audit_id=%s", audit_log.id, exc_info=exc)

        record_audit_metrics(
            created_at=audit_log.created_at,
            result=audit_log.result,
            risk_level=audit_log.risk_level,
            pci_relevant=audit_log.pci_relevant,
        )

        try:
            async with asyncio.timeout_at(deadline):
                await check_archival_threshold(session)
        except (SQLAlchemyError, TimeoutError) as exc:
            await session.rollback()
            logger.warning("audit_archival_check_failed audit_id=%s", audit_log.id, exc_info=exc)
    return audit_log


async def run_inline_audit_job(payload: dict[str, Any]) -> None:
    # Inline mode mimics worker retries without requiring Redis or sleeping.
    settings = get_settings()
    job_payload = AuditJobPayload.model_validate(payload)
    attempt = 1
    while True:
        try:
            await process_audit_log(job_payload, attempt=attempt, max_tries=settings.audit_max_tries)
            return
        except Retry:
            attempt += 1


async def check_archival_threshold(session: AsyncSession, *, now: datetime | None = None) -> bool:
    settings = get_settings()
    cutoff = (now or _utc_now()) - timedelta(days=settings.audit_archive_after_days)
    stale = await audit_repo.count_unarchived_older_than(session, cutoff=cutoff)
    if stale <= settings.audit_archive_threshold:
        return False
    logger.info("audit_archival_triggered stale_rows=%s", stale)
    await trigger_archival(cutoff=cutoff)
    return True


async def trigger_archival(*, cutoff: datetime) -> None:
    settings = get_settings()
    if settings.audit_execution_mode.lower() == "inline":
        async with SessionLocal() as session:
            await archive_old_logs(session, cutoff=cutoff, batch_size=settings.audit_archive_batch_size)
        return
    redis = await get_redis_pool()
    # One archival job per hour at most; arq ignores duplicate job ids.
    await redis.enqueue_job(
        ARCHIVE_JOB_NAME,
        cutoff.isoformat(),
        _job_id=f"audit-archive-{cutoff.strftime('%Y%m%d%H')}",
        _queue_name=settings.audit_queue_default,
    )


async def archive_old_logs(session: AsyncSession, *, cutoff: datetime, batch_size: int = 1000) -> int:
    # Mark rows archived in batches; business columns stay untouched.
    archived = 0
    while True:
        ids = list(
            (
                await session.execute(
                    select(AuditLog.id)
                    .where(AuditLog.archived_at.is_(None), AuditLog.created_at < cutoff)
                    .limit(batch_size)
                )
            ).scalars()
        )
        if not ids:
            break
        await session.execute(
            update(AuditLog)
            .where(AuditLog.id.in_(ids))
            .values(archived_at=_utc_now())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        archived += len(ids)
    if archived:
        logger.info("audit_logs_archived count=%s cutoff=%s", archived, cutoff.isoformat())
    return archived
