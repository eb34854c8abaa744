from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import SecurityAlert
from tokenvault.domain.values import UNRESOLVED_ALERT_STATUSES


async def get_alert(session: AsyncSession, alert_id: str) -> SecurityAlert | None:
    result = await session.execute(select(SecurityAlert).where(SecurityAlert.id == alert_id))
    return result.scalar_one_or_none()


async def find_mergeable(
    session: AsyncSession,
    *,
    alert_type: str,
    ip_address: str | None,
    user_id: str | None,
    vault_id: str | None,
    since: datetime,
) -> SecurityAlert | None:
    # None scope values must match NULL columns, not any value.
    stmt = select(SecurityAlert).where(
        SecurityAlert.alert_type == alert_type,
        SecurityAlert.status.in_(UNRESOLVED_ALERT_STATUSES),
        SecurityAlert.created_at >= since,
        SecurityAlert.ip_address.is_(None) if ip_address is None else SecurityAlert.ip_address == ip_address,
        SecurityAlert.user_id.is_(None) if user_id is None else SecurityAlert.user_id == user_id,
        SecurityAlert.vault_id.is_(None) if vault_id is None else SecurityAlert.vault_id == vault_id,
    )
    stmt = stmt.order_by(SecurityAlert.created_at.desc()).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def list_alerts(
    session: AsyncSession,
    *,
    status: str | None = None,
    severity: str | None = None,
    alert_type: str | None = None,
    vault_id: str | None = None,
    ip_address: str | None = None,
    user_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[SecurityAlert]:
    stmt = select(SecurityAlert)
    if status:
        stmt = stmt.where(SecurityAlert.status == status)
    if severity:
        stmt = stmt.where(SecurityAlert.severity == severity)
    if alert_type:
        stmt = stmt.where(SecurityAlert.alert_type == alert_type)
    if vault_id:
        stmt = stmt.where(SecurityAlert.vault_id == vault_id)
    if ip_address:
        stmt = stmt.where(SecurityAlert.ip_address == ip_address)
    if user_id:
        stmt = stmt.where(SecurityAlert.user_id == user_id)
    if created_from:
        stmt = stmt.where(SecurityAlert.created_at >= created_from)
    if created_to:
        stmt = stmt.where(SecurityAlert.created_at <= created_to)
    stmt = stmt.order_by(SecurityAlert.last_occurrence.desc(), SecurityAlert.id).offset(offset).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def list_due_auto_resolve(session: AsyncSession, *, now: datetime, limit: int = 500) -> list[SecurityAlert]:
    stmt = (
        select(SecurityAlert)
        .where(
            SecurityAlert.status == "open",
            SecurityAlert.auto_resolve_at.is_not(None),
            SecurityAlert.auto_resolve_at <= now,
        )
        .order_by(SecurityAlert.auto_resolve_at)
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def count_grouped(session: AsyncSession, column, *, since: datetime | None = None) -> dict[str, int]:
    stmt = select(column, func.count()).select_from(SecurityAlert)
    if since is not None:
        stmt = stmt.where(SecurityAlert.created_at >= since)
    rows = await session.execute(stmt.group_by(column))
    return {str(key): int(count) for key, count in rows.all()}


async def count_alerts(
    session: AsyncSession,
    *,
    status: str | None = None,
    severity: str | None = None,
    since: datetime | None = None,
) -> int:
    stmt = select(func.count()).select_from(SecurityAlert)
    if status:
        stmt = stmt.where(SecurityAlert.status == status)
    if severity:
        stmt = stmt.where(SecurityAlert.severity == severity)
    if since is not None:
        stmt = stmt.where(SecurityAlert.created_at >= since)
    return int((await session.execute(stmt)).scalar() or 0)
