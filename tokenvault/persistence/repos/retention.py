from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import DataRetentionPolicy


async def list_active_policies(session: AsyncSession) -> list[DataRetentionPolicy]:
    stmt = (
        select(DataRetentionPolicy)
        .where(DataRetentionPolicy.is_active.is_(True))
        .order_by(DataRetentionPolicy.created_at)
    )
    return list((await session.execute(stmt)).scalars())


async def list_policies(session: AsyncSession, *, vault_id: str | None = None) -> list[DataRetentionPolicy]:
    stmt = select(DataRetentionPolicy)
    if vault_id:
        stmt = stmt.where(DataRetentionPolicy.vault_id == vault_id)
    return list((await session.execute(stmt.order_by(DataRetentionPolicy.created_at))).scalars())
