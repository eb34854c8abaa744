from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import ComplianceReport


async def get_report(session: AsyncSession, report_id: str) -> ComplianceReport | None:
    result = await session.execute(select(ComplianceReport).where(ComplianceReport.id == report_id))
    return result.scalar_one_or_none()


async def list_reports(
    session: AsyncSession,
    *,
    report_type: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[ComplianceReport]:
    stmt = select(ComplianceReport)
    if report_type:
        stmt = stmt.where(ComplianceReport.report_type == report_type)
    if status:
        stmt = stmt.where(ComplianceReport.status == status)
    stmt = stmt.order_by(ComplianceReport.created_at.desc()).limit(limit).offset(offset)
    return list((await session.execute(stmt)).scalars())


async def list_expired_reports(session: AsyncSession, *, now: datetime, limit: int = 200) -> list[ComplianceReport]:
    stmt = (
        select(ComplianceReport)
        .where(ComplianceReport.expires_at.is_not(None), ComplianceReport.expires_at <= now)
        .order_by(ComplianceReport.expires_at)
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars())



async def list_stale_processing(
    session: AsyncSession, *, started_before: datetime, limit: int = 200
) -> list[ComplianceReport]:
    stmt = (
        select(ComplianceReport)
        .where(
            ComplianceReport.status == "processing",
            ComplianceReport.started_at.is_not(None),
            ComplianceReport.started_at < started_before,
        )
        .order_by(ComplianceReport.started_at)
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars())
