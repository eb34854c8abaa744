from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import AuditLog
from tokenvault.persistence.repos import audit as audit_repo
from tokenvault.services.telemetry import audit_metrics_snapshot


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def audit_log_view(log: AuditLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "vault_id": log.vault_id,
        "token_id": log.token_id,
        "operation": log.operation,
        "result": log.result,
        "error_message": log.error_message,
        "user_id": log.user_id,
        "api_key_id": log.api_key_id,
        "ip_address": log.ip_address,
        "user_agent": log.user_agent,
        "request_id": log.request_id,
        "request_metadata": log.request_metadata,
        "response_metadata": log.response_metadata,
        "processing_time_ms": log.processing_time_ms,
        "risk_level": log.risk_level,
        "pci_relevant": log.pci_relevant,
        "compliance_reference": log.compliance_reference,
        "created_at": log.created_at.isoformat(),
        "archived_at": log.archived_at.isoformat() if log.archived_at else None,
    }


async def get_audit_summary(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    vault_id: str | None = None,
) -> dict[str, Any]:
    totals = await audit_repo.window_totals(session, start=start, end=end, vault_id=vault_id)
    by_result = await audit_repo.count_grouped(session, AuditLog.result, start=start, end=end, vault_id=vault_id)
    by_operation = await audit_repo.count_grouped(
        session, AuditLog.operation, start=start, end=end, vault_id=vault_id
    )
    by_risk = await audit_repo.count_grouped(session, AuditLog.risk_level, start=start, end=end, vault_id=vault_id)
    total = totals["total"]
    failures = by_result.get("failure", 0)
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "vault_id": vault_id,
        "total_operations": total,
        "by_result": by_result,
        "by_operation": by_operation,
        "by_risk_level": by_risk,
        "failure_rate": round(failures / total * 100, 2) if total else 0.0,
        "unique_users": totals["unique_users"],
        "unique_ips": totals["unique_ips"],
        "pci_relevant_operations": totals["pci_relevant"],
        "avg_processing_time_ms": totals["avg_processing_time_ms"],
    }


async def get_audit_statistics(session: AsyncSession, *, hours: int = 24) -> dict[str, Any]:
    # Summary over the trailing window plus the in-process hourly counters.
    end = _utc_now()
    start = end - timedelta(hours=hours)
    summary = await get_audit_summary(session, start=start, end=end)
    hourly = []
    cursor = start.replace(minute=0, second=0, microsecond=0)
    while cursor <= end:
        hourly.append({"hour": cursor.isoformat(), **audit_metrics_snapshot(cursor)})
        cursor += timedelta(hours=1)
    summary["hours"] = hours
    summary["hourly_metrics"] = hourly
    return summary


async def export_for_compliance(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    vault_id: str | None = None,
) -> list[dict[str, Any]]:
    logs = await audit_repo.fetch_window(session, start=start, end=end, vault_id=vault_id, pci_only=True)
    return [audit_log_view(log) for log in logs]


async def list_audit_logs(session: AsyncSession, **filters: Any) -> list[dict[str, Any]]:
    return [audit_log_view(log) for log in await audit_repo.list_logs(session, **filters)]
