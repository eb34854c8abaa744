from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import get_settings
from tokenvault.core.errors import AlertNotFoundError, InvalidAlertTransitionError
from tokenvault.domain.models import SecurityAlert
from tokenvault.domain.values import RISK_LEVELS
from tokenvault.persistence.locks import transaction_lock
from tokenvault.persistence.repos import alerts as alerts_repo
from tokenvault.services.notifications import notify


logger = logging.getLogger(__name__)

AUTO_RESOLVE_NOTE = "Automatically resolved due to timeout"
# Low-signal alerts close themselves unless someone picks them up.
_AUTO_RESOLVE_SEVERITIES = frozenset({"low", "medium"})

_TRANSITIONS: dict[str, frozenset[str]] = {
    "acknowledged": frozenset({"open"}),
    "resolved": frozenset({"open", "acknowledged"}),
    "false_positive": frozenset({"open", "acknowledged"}),
}


@dataclass
class BulkAlertResult:
    updated: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"updated": self.updated, "skipped": self.skipped, "updated_count": len(self.updated)}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _severity_rank(severity: str) -> int:
    try:
        return RISK_LEVELS.index(severity)
    except ValueError:
        return 0


def merge_key(alert_type: str, ip_address: str | None, user_id: str | None, vault_id: str | None) -> str:
    return f"alert:{alert_type}:{ip_address or '-'}:{user_id or '-'}:{vault_id or '-'}"


def set_auto_resolve(alert: SecurityAlert, hours: int | None = None, *, now: datetime | None = None) -> None:
    settings = get_settings()
    window = hours if hours is not None else settings.alert_auto_resolve_hours
    alert.auto_resolve_at = (now or _utc_now()) + timedelta(hours=window)


async def create_or_merge_alert(
    session: AsyncSession,
    *,
    alert_type: str,
    severity: str,
    title: str,
    message: str,
    ip_address: str | None,
    user_id: str | None,
    vault_id: str | None,
    metadata: dict[str, Any] | None = None,
    initial_count: int = 1,
    triggering_audit_log_id: str | None = None,
    occurred_at: datetime | None = None,
) -> tuple[SecurityAlert, bool]:
    # Serialized per scope key so concurrent workers never create twin alerts.
    settings = get_settings()
    now = occurred_at or _utc_now()
    created = False
    async with transaction_lock(session, merge_key(alert_type, ip_address, user_id, vault_id)):
        existing = await alerts_repo.find_mergeable(
            session,
            alert_type=alert_type,
            ip_address=ip_address,
            user_id=user_id,
            vault_id=vault_id,
            since=now - timedelta(hours=settings.alert_merge_window_hours),
        )
        if existing is not None:
            existing.count = (existing.count or 0) + 1
            existing.last_occurrence = max(existing.last_occurrence, now)
            existing.metadata_json = {**(existing.metadata_json or {}), **(metadata or {})}
            if _severity_rank(severity) > _severity_rank(existing.severity):
                existing.severity = severity
            alert = existing
        else:
            alert = SecurityAlert(
                alert_type=alert_type,
                severity=severity,
                status="open",
                title=title,
                message=message,
                ip_address=ip_address,
                user_id=user_id,
                vault_id=vault_id,
                count=max(1, initial_count),
                first_occurrence=now,
                last_occurrence=now,
                metadata_json=dict(metadata or {}),
                triggering_audit_log_id=triggering_audit_log_id,
                created_at=now,
            )
            if severity in _AUTO_RESOLVE_SEVERITIES:
                set_auto_resolve(alert, now=now)
            session.add(alert)
            created = True
        await session.commit()

    if created:
        logger.info(
            "security_alert_created alert_id=%s type=%s severity=%s ip=%s",
            alert.id,
            alert_type,
            severity,
            ip_address,
        )
        if severity == "critical":
            await notify(
                "security_alert",
                {
                    "alert_id": alert.id,
                    "type": alert_type,
                    "severity": severity,
                    "message": message,
                    "vault_id": vault_id,
                    "ip_address": ip_address,
                },
            )
    return alert, created


async def _require_alert(session: AsyncSession, alert_id: str) -> SecurityAlert:
    alert = await alerts_repo.get_alert(session, alert_id)
    if alert is None:
        raise AlertNotFoundError("Security alert not found", context={"alert_id": alert_id})
    return alert


def _apply_transition(
    alert: SecurityAlert,
    target: str,
    *,
    user_id: str | None,
    notes: str | None,
    now: datetime,
) -> None:
    if alert.status not in _TRANSITIONS[target]:
        raise InvalidAlertTransitionError(
            f"Alert cannot move from {alert.status} to {target}",
            context={"alert_id": alert.id, "status": alert.status},
        )
    alert.status = target
    if target == "acknowledged":
        alert.acknowledged_by = user_id
        alert.acknowledged_at = now
        # Someone owns it now; no silent auto-resolve.
        alert.auto_resolve_at = None
    else:
        alert.resolved_by = user_id
        alert.resolved_at = now
    if notes:
        alert.resolution_notes = notes


async def transition_alert(
    session: AsyncSession,
    alert_id: str,
    target: str,
    *,
    user_id: str | None,
    notes: str | None = None,
) -> SecurityAlert:
    alert = await _require_alert(session, alert_id)
    _apply_transition(alert, target, user_id=user_id, notes=notes, now=_utc_now())
    await session.commit()
    logger.info("security_alert_transition alert_id=%s status=%s user_id=%s", alert.id, target, user_id)
    return alert


async def acknowledge_alert(
    session: AsyncSession, alert_id: str, *, user_id: str | None, notes: str | None = None
) -> SecurityAlert:
    return await transition_alert(session, alert_id, "acknowledged", user_id=user_id, notes=notes)


async def resolve_alert(
    session: AsyncSession, alert_id: str, *, user_id: str | None, notes: str | None = None
) -> SecurityAlert:
    return await transition_alert(session, alert_id, "resolved", user_id=user_id, notes=notes)


async def mark_false_positive(
    session: AsyncSession, alert_id: str, *, user_id: str | None, notes: str | None = None
) -> SecurityAlert:
    return await transition_alert(session, alert_id, "false_positive", user_id=user_id, notes=notes)


async def _bulk_transition(
    session: AsyncSession,
    alert_ids: list[str],
    target: str,
    *,
    user_id: str | None,
    notes: str | None,
) -> BulkAlertResult:
    # Per-alert isolation: one bad id or status does not block the rest.
    result = BulkAlertResult()
    now = _utc_now()
    for alert_id in dict.fromkeys(alert_ids):
        alert = await alerts_repo.get_alert(session, alert_id)
        if alert is None:
            result.skipped[alert_id] = "not_found"
            continue
        try:
            _apply_transition(alert, target, user_id=user_id, notes=notes, now=now)
        except InvalidAlertTransitionError:
            result.skipped[alert_id] = f"invalid_status:{alert.status}"
            continue
        result.updated.append(alert_id)
    await session.commit()
    return result


async def bulk_acknowledge(
    session: AsyncSession, alert_ids: list[str], *, user_id: str | None, notes: str | None = None
) -> BulkAlertResult:
    return await _bulk_transition(session, alert_ids, "acknowledged", user_id=user_id, notes=notes)


async def bulk_resolve(
    session: AsyncSession, alert_ids: list[str], *, user_id: str | None, notes: str | None = None
) -> BulkAlertResult:
    return await _bulk_transition(session, alert_ids, "resolved", user_id=user_id, notes=notes)


async def auto_resolve_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    # Administrative sweep; only untouched (open) alerts past their deadline qualify.
    current = now or _utc_now()
    alerts = await alerts_repo.list_due_auto_resolve(session, now=current)
    for alert in alerts:
        _apply_transition(alert, "resolved", user_id="system", notes=AUTO_RESOLVE_NOTE, now=current)
    await session.commit()
    if alerts:
        logger.info("security_alerts_auto_resolved count=%s", len(alerts))
    return len(alerts)


async def get_alert_statistics(session: AsyncSession, *, days: int = 7) -> dict[str, Any]:
    since = _utc_now() - timedelta(days=days)
    by_status = await alerts_repo.count_grouped(session, SecurityAlert.status, since=since)
    by_severity = await alerts_repo.count_grouped(session, SecurityAlert.severity, since=since)
    by_type = await alerts_repo.count_grouped(session, SecurityAlert.alert_type, since=since)
    open_critical = await alerts_repo.count_alerts(session, status="open", severity="critical", since=since)
    return {
        "period_days": days,
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_severity": by_severity,
        "by_type": by_type,
        "open_critical": open_critical,
    }


def alert_view(alert: SecurityAlert) -> dict[str, Any]:
    return {
        "id": alert.id,
        "type": alert.alert_type,
        "severity": alert.severity,
        "status": alert.status,
        "title": alert.title,
        "message": alert.message,
        "user_id": alert.user_id,
        "ip_address": alert.ip_address,
        "vault_id": alert.vault_id,
        "count": alert.count,
        "first_occurrence": alert.first_occurrence.isoformat(),
        "last_occurrence": alert.last_occurrence.isoformat(),
        "metadata": alert.metadata_json,
        "acknowledged_by": alert.acknowledged_by,
        "acknowledged_at": alert.acknowledged_at.isoformat() if alert.acknowledged_at else None,
        "resolved_by": alert.resolved_by,
        "resolved_at": alert.resolved_at.isoformat() if alert.resolved_at else None,
        "resolution_notes": alert.resolution_notes,
        "auto_resolve_at": alert.auto_resolve_at.isoformat() if alert.auto_resolve_at else None,
        "created_at": alert.created_at.isoformat(),
    }


async def list_alerts(session: AsyncSession, **filters: Any) -> list[dict[str, Any]]:
    return [alert_view(alert) for alert in await alerts_repo.list_alerts(session, **filters)]
