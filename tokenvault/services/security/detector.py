from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import Settings, get_settings
from tokenvault.domain.models import AuditLog, SecurityAlert
from tokenvault.persistence.repos import audit as audit_repo
from tokenvault.services.security.alerts import create_or_merge_alert


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AlertCandidate:
    alert_type: str
    severity: str
    title: str
    message: str
    ip_address: str | None
    user_id: str | None
    vault_id: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Windowed rules seed the alert with the number of matching events.
    initial_count: int = 1


def _scoped(audit_log: AuditLog, **kwargs: Any) -> AlertCandidate:
    return AlertCandidate(
        ip_address=audit_log.ip_address,
        user_id=audit_log.user_id,
        vault_id=audit_log.vault_id,
        **kwargs,
    )


def is_off_hours(ts: datetime, *, settings: Settings | None = None) -> bool:
    settings = settings or get_settings()
    hour = ts.astimezone(ZoneInfo(settings.detector_timezone)).hour
    start, end = settings.detector_off_hours_start, settings.detector_off_hours_end
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def _bulk_item_count(audit_log: AuditLog) -> int:
    metadata = audit_log.request_metadata or {}
    try:
        return int(metadata.get("item_count") or 0)
    except (TypeError, ValueError):
        return 0


async def evaluate_rules(
    session: AsyncSession, audit_log: AuditLog, *, settings: Settings | None = None
) -> list[AlertCandidate]:
    # Rules are independent; each may contribute one candidate for this record.
    settings = settings or get_settings()
    ts = audit_log.created_at
    candidates: list[AlertCandidate] = []

    if audit_log.ip_address and audit_log.result == "failure":
        failures = await audit_repo.count_failures_from_ip(
            session,
            ip_address=audit_log.ip_address,
            since=ts - timedelta(minutes=settings.detector_failure_window_minutes),
            until=ts,
        )
        if failures >= settings.detector_failure_threshold:
            candidates.append(
                _scoped(
                    audit_log,
                    alert_type="repeated_failures",
                    severity="high",
                    title="Repeated failed operations",
                    message=f"Multiple failed operations from IP {audit_log.ip_address}",
                    metadata={
                        "failure_count": failures,
                        "time_window_minutes": settings.detector_failure_window_minutes,
                        "triggering_operation": audit_log.operation,
                    },
                    initial_count=failures,
                )
            )

    if audit_log.ip_address and audit_log.operation == "tokenize":
        seen = await audit_repo.ip_seen_before(
            session,
            ip_address=audit_log.ip_address,
            before=ts - timedelta(days=settings.detector_new_ip_lookback_days),
        )
        if not seen:
            candidates.append(
                _scoped(
                    audit_log,
                    alert_type="new_ip_tokenization",
                    severity="medium",
                    title="Tokenization from new IP address",
                    message=f"Tokenization operation from new IP address {audit_log.ip_address}",
                    metadata={"operation": audit_log.operation},
                )
            )

    if audit_log.ip_address:
        volume = await audit_repo.count_operations_from_ip(
            session,
            ip_address=audit_log.ip_address,
            since=ts - timedelta(hours=1),
            until=ts,
        )
        if volume >= settings.detector_high_volume_threshold:
            candidates.append(
                _scoped(
                    audit_log,
                    alert_type="high_volume_ip",
                    severity="high",
                    title="High operation volume from single IP",
                    message=f"High volume of operations from IP {audit_log.ip_address}",
                    metadata={"operation_count": volume, "time_window_minutes": 60},
                    initial_count=volume,
                )
            )

    if audit_log.user_id and audit_log.operation == "detokenize":
        detokenizes = await audit_repo.count_user_operations(
            session,
            user_id=audit_log.user_id,
            operation="detokenize",
            since=ts - timedelta(hours=1),
            until=ts,
        )
        if detokenizes >= settings.detector_detokenize_volume_threshold:
            candidates.append(
                _scoped(
                    audit_log,
                    alert_type="high_volume_detokenize",
                    severity="high",
                    title="High detokenization volume",
                    message=f"High volume of detokenize operations by user {audit_log.user_id}",
                    metadata={"detokenize_count": detokenizes, "time_window_minutes": 60},
                    initial_count=detokenizes,
                )
            )

    if is_off_hours(ts, settings=settings):
        candidates.append(
            _scoped(
                audit_log,
                alert_type="off_hours_operation",
                severity="low",
                title="Operation outside business hours",
                message=f"{audit_log.operation} performed outside business hours",
                metadata={"operation": audit_log.operation, "timezone": settings.detector_timezone},
            )
        )

    if audit_log.operation == "bulk_tokenize":
        item_count = _bulk_item_count(audit_log)
        if item_count > settings.detector_bulk_item_threshold:
            candidates.append(
                _scoped(
                    audit_log,
                    alert_type="large_bulk_operation",
                    severity="medium",
                    title="Large bulk tokenization",
                    message=f"Bulk tokenization of {item_count} items",
                    metadata={"item_count": item_count},
                )
            )

    if audit_log.risk_level == "high":
        candidates.append(
            _scoped(
                audit_log,
                alert_type="high_risk_operation",
                severity="high",
                title="High-risk operation",
                message=f"High-risk {audit_log.operation} operation recorded",
                metadata={"operation": audit_log.operation, "result": audit_log.result},
            )
        )

    return candidates


async def analyze_security_patterns(session: AsyncSession, audit_log: AuditLog) -> list[SecurityAlert]:
    # Runs right after the audit row is durable; window rules query by timestamp.
    candidates = await evaluate_rules(session, audit_log)
    alerts: list[SecurityAlert] = []
    for candidate in candidates:
        alert, _created = await create_or_merge_alert(
            session,
            alert_type=candidate.alert_type,
            severity=candidate.severity,
            title=candidate.title,
            message=candidate.message,
            ip_address=candidate.ip_address,
            user_id=candidate.user_id,
            vault_id=candidate.vault_id,
            metadata=candidate.metadata,
            initial_count=candidate.initial_count,
            triggering_audit_log_id=audit_log.id,
            occurred_at=audit_log.created_at,
        )
        alerts.append(alert)
    if alerts:
        logger.info(
            "security_patterns_detected audit_id=%s alert_types=%s",
            audit_log.id,
            ",".join(c.alert_type for c in candidates),
        )
    return alerts
