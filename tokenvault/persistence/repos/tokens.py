from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import Token, TokenSequence
from tokenvault.persistence.db import dialect_name


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_by_value(session: AsyncSession, token_value: str) -> Token | None:
    result = await session.execute(select(Token).where(Token.token_value == token_value))
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, token_id: str) -> Token | None:
    result = await session.execute(select(Token).where(Token.id == token_id))
    return result.scalar_one_or_none()


async def find_active_by_hash(session: AsyncSession, *, vault_id: str, data_hash: str) -> Token | None:
    result = await session.execute(
        select(Token).where(
            Token.vault_id == vault_id,
            Token.data_hash == data_hash,
            Token.status == "active",
        )
    )
    return result.scalar_one_or_none()


async def token_value_exists(session: AsyncSession, token_value: str) -> bool:
    result = await session.execute(select(Token.id).where(Token.token_value == token_value).limit(1))
    return result.scalar_one_or_none() is not None


def _metadata_match(key: str, value: Any):
    # Typed JSON path comparison works on both JSONB and SQLite JSON.
    element = Token.metadata_json[key]
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    if isinstance(value, float):
        return element.as_float() == value
    return element.as_string() == str(value)


async def search_tokens(
    session: AsyncSession,
    *,
    vault_id: str,
    metadata: dict[str, Any] | None = None,
    token_type: str | None = None,
    status: str | None = None,
    created_after: datetime | None = None,
    created_before: datetime | None = None,
    limit: int = 100,
) -> list[Token]:
    stmt = select(Token).where(Token.vault_id == vault_id)
    for key, value in (metadata or {}).items():
        stmt = stmt.where(_metadata_match(key, value))
    if token_type:
        stmt = stmt.where(Token.token_type == token_type)
    if status:
        stmt = stmt.where(Token.status == status)
    if created_after:
        stmt = stmt.where(Token.created_at >= created_after)
    if created_before:
        stmt = stmt.where(Token.created_at <= created_before)
    stmt = stmt.order_by(Token.created_at.desc(), Token.id).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_expired_active(session: AsyncSession, *, now: datetime, limit: int = 500) -> list[Token]:
    result = await session.execute(
        select(Token)
        .where(Token.status == "active", Token.expires_at.is_not(None), Token.expires_at <= now)
        .order_by(Token.expires_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def token_statistics(session: AsyncSession, *, vault_id: str | None = None) -> dict[str, Any]:
    base = select(Token.status, Token.token_type, func.count(), func.coalesce(func.sum(Token.usage_count), 0))
    if vault_id:
        base = base.where(Token.vault_id == vault_id)
    rows = (await session.execute(base.group_by(Token.status, Token.token_type))).all()
    by_status: dict[str, int] = {}
    by_type: dict[str, int] = {}
    total_usage = 0
    for status, token_type, count, usage in rows:
        by_status[status] = by_status.get(status, 0) + int(count)
        by_type[token_type] = by_type.get(token_type, 0) + int(count)
        total_usage += int(usage or 0)
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_type": by_type,
        "total_usage": total_usage,
    }


async def count_expiring_between(
    session: AsyncSession, *, start: datetime, end: datetime, vault_id: str | None = None
) -> int:
    stmt = select(func.count()).select_from(Token).where(
        Token.status == "active",
        Token.expires_at > start,
        Token.expires_at <= end,
    )
    if vault_id:
        stmt = stmt.where(Token.vault_id == vault_id)
    return int((await session.execute(stmt)).scalar() or 0)


async def next_sequence_value(session: AsyncSession, *, name: str, start: int) -> int:
    # Row-level atomic increment; the first caller seeds the counter at `start`.
    bump = (
        update(TokenSequence)
        .where(TokenSequence.name == name)
        .values(value=TokenSequence.value + 1, updated_at=_utc_now())
        .returning(TokenSequence.value)
        .execution_options(synchronize_session=False)
    )
    value = (await session.execute(bump)).scalar_one_or_none()
    if value is not None:
        return int(value)
    insert = pg_insert if dialect_name(session) == "postgresql" else sqlite_insert
    await session.execute(
        insert(TokenSequence)
        .values(name=name, value=start, updated_at=_utc_now())
        .on_conflict_do_nothing(index_elements=["name"])
    )
    return int((await session.execute(bump)).scalar_one())
