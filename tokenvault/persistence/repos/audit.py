from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import AuditLog


async def get_log(session: AsyncSession, audit_id: str) -> AuditLog | None:
    result = await session.execute(select(AuditLog).where(AuditLog.id == audit_id))
    return result.scalar_one_or_none()


async def list_logs(
    session: AsyncSession,
    *,
    vault_id: str | None = None,
    token_id: str | None = None,
    operation: str | None = None,
    result: str | None = None,
    risk_level: str | None = None,
    user_id: str | None = None,
    ip_address: str | None = None,
    pci_relevant: bool | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLog]:
    stmt = select(AuditLog)
    if vault_id:
        stmt = stmt.where(AuditLog.vault_id == vault_id)
    if token_id:
        stmt = stmt.where(AuditLog.token_id == token_id)
    if operation:
        stmt = stmt.where(AuditLog.operation == operation)
    if result:
        stmt = stmt.where(AuditLog.result == result)
    if risk_level:
        stmt = stmt.where(AuditLog.risk_level == risk_level)
    if user_id:
        stmt = stmt.where(AuditLog.user_id == user_id)
    if ip_address:
        stmt = stmt.where(AuditLog.ip_address == ip_address)
    if pci_relevant is not None:
        stmt = stmt.where(AuditLog.pci_relevant == pci_relevant)
    if created_from:
        stmt = stmt.where(AuditLog.created_at >= created_from)
    if created_to:
        stmt = stmt.where(AuditLog.created_at <= created_to)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).offset(offset).limit(limit)
    rows = await session.execute(stmt)
    return list(rows.scalars().all())


async def count_failures_from_ip(
    session: AsyncSession, *, ip_address: str, since: datetime, until: datetime
) -> int:
    # Window queries use timestamps, never insertion order.
    stmt = select(func.count()).select_from(AuditLog).where(
        AuditLog.ip_address == ip_address,
        AuditLog.result == "failure",
        AuditLog.created_at >= since,
        AuditLog.created_at <= until,
    )
    return int((await session.execute(stmt)).scalar() or 0)


async def count_operations_from_ip(
    session: AsyncSession, *, ip_address: str, since: datetime, until: datetime
) -> int:
    stmt = select(func.count()).select_from(AuditLog).where(
        AuditLog.ip_address == ip_address,
        AuditLog.created_at >= since,
        AuditLog.created_at <= until,
    )
    return int((await session.execute(stmt)).scalar() or 0)


async def count_user_operations(
    session: AsyncSession, *, user_id: str, operation: str, since: datetime, until: datetime
) -> int:
    stmt = select(func.count()).select_from(AuditLog).where(
        AuditLog.user_id == user_id,
        AuditLog.operation == operation,
        AuditLog.created_at >= since,
        AuditLog.created_at <= until,
    )
    return int((await session.execute(stmt)).scalar() or 0)


async def ip_seen_before(session: AsyncSession, *, ip_address: str, before: datetime) -> bool:
    stmt = select(AuditLog.id).where(AuditLog.ip_address == ip_address, AuditLog.created_at < before).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none() is not None


async def count_unarchived_older_than(session: AsyncSession, *, cutoff: datetime) -> int:
    stmt = select(func.count()).select_from(AuditLog).where(
        AuditLog.archived_at.is_(None),
        AuditLog.created_at < cutoff,
    )
    return int((await session.execute(stmt)).scalar() or 0)


async def fetch_window(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    vault_id: str | None = None,
    pci_only: bool = False,
) -> list[AuditLog]:
    stmt = select(AuditLog).where(AuditLog.created_at >= start, AuditLog.created_at <= end)
    if vault_id:
        stmt = stmt.where(AuditLog.vault_id == vault_id)
    if pci_only:
        stmt = stmt.where(AuditLog.pci_relevant.is_(True))
    rows = await session.execute(stmt.order_by(AuditLog.created_at, AuditLog.id))
    return list(rows.scalars().all())


def _window_filters(start: datetime, end: datetime, vault_id: str | None) -> list:
    filters = [AuditLog.created_at >= start, AuditLog.created_at <= end]
    if vault_id:
        filters.append(AuditLog.vault_id == vault_id)
    return filters


async def count_grouped(
    session: AsyncSession, column, *, start: datetime, end: datetime, vault_id: str | None = None
) -> dict[str, int]:
    stmt = (
        select(column, func.count())
        .select_from(AuditLog)
        .where(*_window_filters(start, end, vault_id))
        .group_by(column)
    )
    rows = await session.execute(stmt)
    return {str(key): int(count) for key, count in rows.all()}


async def window_totals(
    session: AsyncSession, *, start: datetime, end: datetime, vault_id: str | None = None
) -> dict[str, int]:
    stmt = select(
        func.count(),
        func.count(func.distinct(AuditLog.user_id)),
        func.count(func.distinct(AuditLog.ip_address)),
        func.coalesce(func.sum(case((AuditLog.pci_relevant.is_(True), 1), else_=0)), 0),
        func.coalesce(func.avg(AuditLog.processing_time_ms), 0),
    ).where(*_window_filters(start, end, vault_id))
    total, users, ips, pci, avg_ms = (await session.execute(stmt)).one()
    return {
        "total": int(total or 0),
        "unique_users": int(users or 0),
        "unique_ips": int(ips or 0),
        "pci_relevant": int(pci or 0),
        "avg_processing_time_ms": int(round(float(avg_ms or 0))),
    }
