from __future__ import annotations

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import Token, Vault, VaultKey


async def get_vault(session: AsyncSession, vault_id: str, *, for_update: bool = False) -> Vault | None:
    stmt = select(Vault).where(Vault.id == vault_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_vault_by_name(session: AsyncSession, name: str) -> Vault | None:
    result = await session.execute(select(Vault).where(Vault.name == name))
    return result.scalar_one_or_none()


async def list_vaults(
    session: AsyncSession,
    *,
    status: str | None = None,
    data_type: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Vault]:
    stmt = select(Vault)
    if status:
        stmt = stmt.where(Vault.status == status)
    if data_type:
        stmt = stmt.where(Vault.data_type == data_type)
    stmt = stmt.order_by(Vault.created_at.desc(), Vault.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_active_key(session: AsyncSession, vault_id: str) -> VaultKey | None:
    result = await session.execute(
        select(VaultKey)
        .where(VaultKey.vault_id == vault_id, VaultKey.status == "active")
        .order_by(VaultKey.key_version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_key_by_version(session: AsyncSession, vault_id: str, key_version: int) -> VaultKey | None:
    result = await session.execute(
        select(VaultKey).where(VaultKey.vault_id == vault_id, VaultKey.key_version == key_version)
    )
    return result.scalar_one_or_none()


async def list_keys(session: AsyncSession, vault_id: str) -> list[VaultKey]:
    result = await session.execute(
        select(VaultKey).where(VaultKey.vault_id == vault_id).order_by(VaultKey.key_version)
    )
    return list(result.scalars().all())


async def reserve_token_slot(session: AsyncSession, vault_id: str) -> bool:
    # Conditional increment: zero rows updated means the vault is at capacity.
    result = await session.execute(
        update(Vault)
        .where(Vault.id == vault_id, Vault.current_token_count < Vault.max_tokens)
        .values(current_token_count=Vault.current_token_count + 1)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def release_token_slots(session: AsyncSession, vault_id: str, amount: int = 1) -> None:
    if amount <= 0:
        return
    await session.execute(
        update(Vault)
        .where(Vault.id == vault_id)
        .values(
            current_token_count=case(
                (Vault.current_token_count > amount, Vault.current_token_count - amount),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )


async def count_tokens_by_status(session: AsyncSession, vault_id: str) -> dict[str, int]:
    result = await session.execute(
        select(Token.status, func.count()).where(Token.vault_id == vault_id).group_by(Token.status)
    )
    return {status: int(count) for status, count in result.all()}
