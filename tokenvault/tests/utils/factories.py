from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import select

from tokenvault.domain.models import AuditLog, SecurityAlert, Token, Vault
from tokenvault.domain.values import RequestContext
from tokenvault.persistence.db import SessionLocal
from tokenvault.services.vaults import create_vault


def operator_context(*, user_id: str = "operator-1", ip_address: str | None = None) -> RequestContext:
    return RequestContext(user_id=user_id, ip_address=ip_address, request_id=f"req-{uuid4().hex[:8]}")


async def create_test_vault(**overrides: Any) -> Vault:
    params: dict[str, Any] = {"name": f"vault-{uuid4().hex[:8]}", "data_type": "card"}
    params.update(overrides)
    async with SessionLocal() as session:
        return await create_vault(session, **params)


async def fetch_vault(vault_id: str) -> Vault:
    # Fresh session so counters updated with bulk UPDATEs are visible.
    async with SessionLocal() as session:
        return await session.get(Vault, vault_id)


async def fetch_token(token_id: str) -> Token:
    async with SessionLocal() as session:
        return await session.get(Token, token_id)


async def fetch_audit_logs(operation: str | None = None) -> list[AuditLog]:
    async with SessionLocal() as session:
        stmt = select(AuditLog).order_by(AuditLog.created_at)
        if operation:
            stmt = stmt.where(AuditLog.operation == operation)
        return list((await session.execute(stmt)).scalars().all())


async def fetch_alerts(alert_type: str | None = None) -> list[SecurityAlert]:
    async with SessionLocal() as session:
        stmt = select(SecurityAlert).order_by(SecurityAlert.created_at)
        if alert_type:
            stmt = stmt.where(SecurityAlert.alert_type == alert_type)
        return list((await session.execute(stmt)).scalars().all())
