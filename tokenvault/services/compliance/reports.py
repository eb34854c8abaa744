from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from arq import Retry
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import get_settings
from tokenvault.core.errors import (
    ComplianceReportError,
    InvalidReportStateError,
    ReportNotFoundError,
    VaultNotFoundError,
)
from tokenvault.domain.models import ComplianceReport
from tokenvault.domain.values import REPORT_TYPES
from tokenvault.persistence.db import SessionLocal
from tokenvault.persistence.repos import audit as audit_repo
from tokenvault.persistence.repos import reports as reports_repo
from tokenvault.persistence.repos import vaults as vaults_repo
from tokenvault.services.compliance.analyzer import analyze, generate_compliance_data, summarize_logs
from tokenvault.services.compliance.storage import FileStore, get_file_store
from tokenvault.services.notifications import notify
from tokenvault.services.queueing import get_redis_pool
from tokenvault.services.resilience import backoff_seconds, job_time_budget
from tokenvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

REPORT_JOB_NAME = "generate_compliance_report"
STALE_REPORT_ERROR = "Report generation exceeded its time limit"


class ComplianceJobPayload(BaseModel):
    report_id: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def report_view(report: ComplianceReport) -> dict[str, Any]:
    return {
        "id": report.id,
        "report_type": report.report_type,
        "status": report.status,
        "progress": report.progress,
        "parameters": report.parameters,
        "summary": report.summary,
        "file_path": report.file_path,
        "file_hash": report.file_hash,
        "error_message": report.error_message,
        "attempts": report.attempts,
        "generated_by": report.generated_by,
        "started_at": report.started_at.isoformat() if report.started_at else None,
        "completed_at": report.completed_at.isoformat() if report.completed_at else None,
        "expires_at": report.expires_at.isoformat() if report.expires_at else None,
        "created_at": report.created_at.isoformat(),
    }


def _validate_request(report_type: str, start: datetime, end: datetime) -> None:
    settings = get_settings()
    if report_type not in REPORT_TYPES:
        raise ComplianceReportError(
            "Unsupported report type",
            code="INVALID_REPORT_TYPE",
            context={"report_type": report_type, "supported": list(REPORT_TYPES)},
        )
    if start >= end:
        raise ComplianceReportError("Report start must precede its end", code="INVALID_DATE_RANGE")
    if end - start > timedelta(days=settings.compliance_max_range_days):
        raise ComplianceReportError(
            "Report window is too large",
            code="DATE_RANGE_TOO_LARGE",
            context={"max_days": settings.compliance_max_range_days},
        )


async def create_compliance_report(
    session: AsyncSession,
    *,
    report_type: str,
    start: datetime,
    end: datetime,
    vault_id: str | None = None,
    generated_by: str | None = None,
) -> ComplianceReport:
    _validate_request(report_type, start, end)
    if vault_id and await vaults_repo.get_vault(session, vault_id) is None:
        raise VaultNotFoundError("Vault not found", context={"vault_id": vault_id})
    report = ComplianceReport(
        id=str(uuid4()),
        report_type=report_type,
        status="pending",
        progress=0,
        parameters={"start_date": start.isoformat(), "end_date": end.isoformat(), "vault_id": vault_id},
        generated_by=generated_by,
        attempts=0,
    )
    session.add(report)
    await session.commit()
    logger.info("compliance_report_created report_id=%s type=%s", report.id, report_type)
    await enqueue_report(session, report, job_id=f"compliance-report-{report.id}")
    return report


async def enqueue_report(session: AsyncSession, report: ComplianceReport, *, job_id: str) -> None:
    settings = get_settings()
    if settings.compliance_execution_mode.lower() == "inline":
        await run_inline_report_job(ComplianceJobPayload(report_id=report.id).model_dump())
        await session.refresh(report)
        return
    try:
        redis = await get_redis_pool()
        await redis.enqueue_job(
            REPORT_JOB_NAME,
            ComplianceJobPayload(report_id=report.id).model_dump(),
            _job_id=job_id,
            _queue_name=settings.compliance_queue_name,
        )
    except Exception as exc:  # noqa: BLE001 - a report that cannot be queued is failed, not left pending
        logger.error("compliance_report_enqueue_failed report_id=%s", report.id, exc_info=exc)
        report.status = "failed"
        report.error_message = f"Enqueue failed: {exc}"
        report.completed_at = _utc_now()
        await session.commit()
        raise ComplianceReportError(
            "Compliance report could not be queued",
            code="REPORT_ENQUEUE_FAILED",
            context={"report_id": report.id},
        ) from exc
    increment_counter("compliance_reports_enqueued_total")


async def _set_progress(session: AsyncSession, report: ComplianceReport, progress: int) -> None:
    report.progress = progress
    await session.commit()


async def _build_report(session: AsyncSession, report: ComplianceReport, store: FileStore) -> None:
    settings = get_settings()
    params = report.parameters or {}
    start = datetime.fromisoformat(params["start_date"])
    end = datetime.fromisoformat(params["end_date"])
    vault_id = params.get("vault_id")

    await _set_progress(session, report, 25)
    logs = await audit_repo.fetch_window(session, start=start, end=end, vault_id=vault_id, pci_only=True)
    compliance_data = await generate_compliance_data(session, start=start, end=end, vault_id=vault_id)

    await _set_progress(session, report, 50)
    analysis = analyze(report.report_type, logs, settings=settings)
    log_summary = summarize_logs(logs)

    await _set_progress(session, report, 75)
    now = _utc_now()
    document = {
        "report_id": report.id,
        "report_type": report.report_type,
        "generated_at": now.isoformat(),
        "generated_by": report.generated_by,
        "parameters": params,
        "summary": log_summary,
        "analysis": analysis.as_dict(),
        "compliance_data": compliance_data,
    }
    body = json.dumps(document, sort_keys=True, indent=2, default=str).encode("utf-8")
    path = store.write(f"{report.report_type}/{report.id}.json", body)

    report.file_path = path
    report.file_hash = store.hash_file(path)
    report.summary = {
        **log_summary,
        "compliance_score": analysis.compliance_score,
        "risk_assessment": analysis.risk_assessment,
        "violation_count": len(analysis.violations),
    }
    report.status = "completed"
    report.progress = 100
    report.error_message = None
    report.completed_at = now
    report.expires_at = now + timedelta(days=settings.compliance_report_ttl_days)
    await session.commit()


async def process_compliance_report(
    report_id: str,
    *,
    attempt: int,
    max_tries: int,
    store: FileStore | None = None,
) -> ComplianceReport | None:
    # Shared by the arq worker and inline mode.
    settings = get_settings()
    store = store or get_file_store()
    async with SessionLocal() as session:
        report = await reports_repo.get_report(session, report_id)
        if report is None:
            logger.warning("compliance_report_missing report_id=%s", report_id)
            return None
        if report.status == "completed":
            return report
        report.status = "processing"
        report.progress = 0
        report.attempts = attempt
        # Per attempt, so the stale-report sweep measures the current run.
        report.started_at = _utc_now()
        await session.commit()

        budget = job_time_budget(settings.compliance_job_timeout_s)
        try:
            async with asyncio.timeout(budget):
                await _build_report(session, report, store)
        except Exception as exc:  # noqa: BLE001 - any generation failure is retried then recorded
            await session.rollback()
            error = f"{STALE_REPORT_ERROR} ({budget:.0f}s)" if isinstance(exc, TimeoutError) else str(exc)
            report = await reports_repo.get_report(session, report_id)
            if report is None:
                return None
            if attempt < max_tries:
                logger.warning(
                    "compliance_report_retry report_id=%s attempt=%s max_tries=%s",
                    report_id,
                    attempt,
                    max_tries,
                    exc_info=exc,
                )
                report.status = "pending"
                report.progress = 0
                report.error_message = error
                await session.commit()
                raise Retry(defer=backoff_seconds(settings.compliance_retry_backoff_s, attempt)) from exc
            logger.error("compliance_report_failed report_id=%s attempts=%s", report_id, attempt, exc_info=exc)
            report.status = "failed"
            report.error_message = error
            report.completed_at = _utc_now()
            await session.commit()
            increment_counter("compliance_reports_failed_total")
            await notify(
                "report_failed",
                {"report_id": report.id, "report_type": report.report_type, "error": error, "attempts": attempt},
            )
            return report

        increment_counter("compliance_reports_completed_total")
        logger.info("compliance_report_completed report_id=%s hash=%s", report.id, report.file_hash)
        await notify(
            "report_ready",
            {
                "report_id": report.id,
                "report_type": report.report_type,
                "file_path": report.file_path,
                "file_hash": report.file_hash,
                "compliance_score": (report.summary or {}).get("compliance_score"),
            },
        )
        return report


async def fail_stale_reports(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Reports left in processing past the job timeout were abandoned by their worker.
    settings = get_settings()
    current = now or _utc_now()
    cutoff = current - timedelta(seconds=settings.compliance_job_timeout_s)
    stale = await reports_repo.list_stale_processing(session, started_before=cutoff)
    for report in stale:
        report.status = "failed"
        report.error_message = STALE_REPORT_ERROR
        report.completed_at = current
    if not stale:
        return 0
    await session.commit()
    for report in stale:
        increment_counter("compliance_reports_failed_total")
        logger.error("compliance_report_stale report_id=%s attempts=%s", report.id, report.attempts)
        await notify(
            "report_failed",
            {
                "report_id": report.id,
                "report_type": report.report_type,
                "error": STALE_REPORT_ERROR,
                "attempts": report.attempts,
            },
        )
    return len(stale)


async def run_inline_report_job(payload: dict[str, Any]) -> None:
    settings = get_settings()
    job_payload = ComplianceJobPayload.model_validate(payload)
    attempt = 1
    while True:
        try:
            await process_compliance_report(
                job_payload.report_id,
                attempt=attempt,
                max_tries=settings.compliance_max_tries,
            )
            return
        except Retry:
            attempt += 1


async def get_report(session: AsyncSession, report_id: str) -> ComplianceReport:
    report = await reports_repo.get_report(session, report_id)
    if report is None:
        raise ReportNotFoundError("Compliance report not found", context={"report_id": report_id})
    return report


async def list_reports(session: AsyncSession, **filters: Any) -> list[dict[str, Any]]:
    return [report_view(report) for report in await reports_repo.list_reports(session, **filters)]


async def read_report_artifact(
    session: AsyncSession,
    report_id: str,
    *,
    store: FileStore | None = None,
) -> dict[str, Any]:
    store = store or get_file_store()
    report = await get_report(session, report_id)
    if report.status != "completed" or not report.file_path:
        raise InvalidReportStateError(
            "Compliance report is not ready",
            context={"report_id": report_id, "status": report.status},
        )
    if store.hash_file(report.file_path) != report.file_hash:
        raise ComplianceReportError(
            "Report artifact does not match its recorded hash",
            code="ARTIFACT_INTEGRITY_FAILED",
            context={"report_id": report_id},
        )
    return json.loads(store.read(report.file_path))


async def retry_report(session: AsyncSession, report_id: str) -> ComplianceReport:
    report = await get_report(session, report_id)
    if report.status != "failed":
        raise InvalidReportStateError(
            "Only failed reports can be retried",
            context={"report_id": report_id, "status": report.status},
        )
    report.status = "pending"
    report.progress = 0
    report.error_message = None
    report.completed_at = None
    await session.commit()
    logger.info("compliance_report_retry_requested report_id=%s", report_id)
    await enqueue_report(session, report, job_id=f"compliance-report-{report.id}-{uuid4().hex[:8]}")
    return report


async def cleanup_expired_reports(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    store: FileStore | None = None,
) -> int:
    store = store or get_file_store()
    expired = await reports_repo.list_expired_reports(session, now=now or _utc_now())
    for report in expired:
        if report.file_path:
            try:
                store.delete(report.file_path)
            except OSError as exc:
                logger.warning("compliance_report_artifact_delete_failed report_id=%s", report.id, exc_info=exc)
        await session.delete(report)
    if expired:
        await session.commit()
        logger.info("compliance_reports_cleaned count=%s", len(expired))
    return len(expired)
