from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.errors import RetentionPolicyError, VaultNotFoundError
from tokenvault.domain import lifecycle
from tokenvault.domain.models import AuditLog, DataRetentionPolicy, Token
from tokenvault.persistence.repos import retention as retention_repo
from tokenvault.persistence.repos import vaults as vaults_repo
from tokenvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Tokens hold ciphertext only; there is nothing to anonymize on them.
RETENTION_ACTIONS: dict[str, tuple[str, ...]] = {
    "tokens": ("delete", "archive"),
    "audit_logs": ("delete", "archive", "anonymize"),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_retention_policy(
    session: AsyncSession,
    *,
    name: str,
    data_category: str,
    retention_days: int,
    action: str = "delete",
    vault_id: str | None = None,
) -> DataRetentionPolicy:
    allowed = RETENTION_ACTIONS.get(data_category)
    if allowed is None:
        raise RetentionPolicyError(
            "Unsupported data category",
            context={"data_category": data_category, "supported": list(RETENTION_ACTIONS)},
        )
    if action not in allowed:
        raise RetentionPolicyError(
            "Action not supported for data category",
            context={"data_category": data_category, "action": action, "supported": list(allowed)},
        )
    if retention_days <= 0:
        raise RetentionPolicyError("retention_days must be positive", context={"retention_days": retention_days})
    if vault_id and await vaults_repo.get_vault(session, vault_id) is None:
        raise VaultNotFoundError("Vault not found", context={"vault_id": vault_id})
    policy = DataRetentionPolicy(
        name=name,
        vault_id=vault_id,
        data_category=data_category,
        retention_days=retention_days,
        action=action,
        is_active=True,
    )
    session.add(policy)
    await session.commit()
    return policy


async def _expire_stale_tokens(
    session: AsyncSession,
    *,
    vault_id: str | None,
    cutoff: datetime,
    now: datetime,
    batch_size: int,
) -> int:
    expired = 0
    while True:
        stmt = select(Token).where(Token.status == "active", Token.created_at < cutoff)
        if vault_id:
            stmt = stmt.where(Token.vault_id == vault_id)
        tokens = list((await session.execute(stmt.limit(batch_size))).scalars())
        if not tokens:
            return expired
        per_vault: Counter[str] = Counter()
        for token in tokens:
            lifecycle.expire(token, now=now)
            per_vault[token.vault_id] += 1
        for owner, count in per_vault.items():
            await vaults_repo.release_token_slots(session, owner, count)
        await session.commit()
        expired += len(tokens)


async def _apply_token_policy(
    session: AsyncSession,
    policy: DataRetentionPolicy,
    *,
    cutoff: datetime,
    now: datetime,
    batch_size: int,
) -> int:
    # Active tokens past retention are expired first so vault counts stay accurate.
    affected = await _expire_stale_tokens(
        session, vault_id=policy.vault_id, cutoff=cutoff, now=now, batch_size=batch_size
    )
    if policy.action == "archive":
        return affected
    stmt = delete(Token).where(Token.created_at < cutoff, Token.status != "active")
    if policy.vault_id:
        stmt = stmt.where(Token.vault_id == policy.vault_id)
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    await session.commit()
    return int(result.rowcount or 0)


async def _apply_audit_policy(session: AsyncSession, policy: DataRetentionPolicy, *, cutoff: datetime, now: datetime) -> int:
    scope = [AuditLog.created_at < cutoff]
    if policy.vault_id:
        scope.append(AuditLog.vault_id == policy.vault_id)
    if policy.action == "delete":
        stmt = delete(AuditLog).where(*scope)
    elif policy.action == "archive":
        stmt = update(AuditLog).where(*scope, AuditLog.archived_at.is_(None)).values(archived_at=now)
    else:
        stmt = (
            update(AuditLog)
            .where(
                *scope,
                or_(
                    AuditLog.user_id.is_not(None),
                    AuditLog.ip_address.is_not(None),
                    AuditLog.user_agent.is_not(None),
                    AuditLog.session_id.is_not(None),
                ),
            )
            .values(user_id=None, ip_address=None, user_agent=None, session_id=None)
        )
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    await session.commit()
    return int(result.rowcount or 0)


async def execute_policy(
    session: AsyncSession,
    policy: DataRetentionPolicy,
    *,
    now: datetime | None = None,
    batch_size: int = 500,
) -> int:
    current = now or _utc_now()
    cutoff = current - timedelta(days=policy.retention_days)
    if policy.data_category == "tokens":
        affected = await _apply_token_policy(session, policy, cutoff=cutoff, now=current, batch_size=batch_size)
    elif policy.data_category == "audit_logs":
        affected = await _apply_audit_policy(session, policy, cutoff=cutoff, now=current)
    else:
        raise RetentionPolicyError("Unsupported data category", context={"data_category": policy.data_category})
    policy.last_executed_at = current
    policy.last_affected_rows = affected
    await session.commit()
    logger.info(
        "retention_policy_executed policy_id=%s category=%s action=%s affected=%s",
        policy.id,
        policy.data_category,
        policy.action,
        affected,
    )
    return affected


async def execute_retention_policies(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    results: dict[str, int] = {}
    policy_ids = [policy.id for policy in await retention_repo.list_active_policies(session)]
    for policy_id in policy_ids:
        try:
            policy = await session.get(DataRetentionPolicy, policy_id)
            if policy is None:
                continue
            results[policy_id] = await execute_policy(session, policy, now=now)
        except (SQLAlchemyError, RetentionPolicyError) as exc:
            # One broken policy must not block the rest of the sweep.
            await session.rollback()
            increment_counter("retention_policy_failures_total")
            logger.error("retention_policy_failed policy_id=%s", policy_id, exc_info=exc)
    return results
