from __future__ import annotations

import ipaddress
import logging
import time
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import get_settings
from tokenvault.core.errors import (
    OperationNotAllowedError,
    TokenVaultError,
    VaultAccessDeniedError,
    VaultConflictError,
    VaultError,
    VaultNotFoundError,
)
from tokenvault.domain import lifecycle
from tokenvault.domain.events import DomainEvent, VaultCreated, VaultKeyRotated, VaultUpdated
from tokenvault.domain.models import DataRetentionPolicy, Vault
from tokenvault.domain.values import (
    DATA_TYPES,
    DEFAULT_ALLOWED_OPERATIONS,
    OPERATIONS,
    RequestContext,
)
from tokenvault.persistence.locks import transaction_lock
from tokenvault.persistence.repos import vaults as vaults_repo
from tokenvault.services.audit.pipeline import log_event
from tokenvault.services.crypto.encryption import is_supported_algorithm
from tokenvault.services.crypto.keys import build_vault_key, rotate_vault_key


logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "allowed_operations",
        "max_tokens",
        "retention_days",
        "key_rotation_interval_days",
        "access_restrictions",
    }
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def vault_lock_key(vault_id: str) -> str:
    return f"vault:{vault_id}"


def _validate_operations(operations: Sequence[str]) -> list[str]:
    unknown = sorted(set(operations) - set(OPERATIONS))
    if unknown:
        raise VaultError("Unknown vault operations", code="INVALID_OPERATIONS", context={"operations": unknown})
    return list(dict.fromkeys(operations))


def _validate_restrictions(restrictions: dict[str, Any] | None) -> dict[str, Any] | None:
    if not restrictions:
        return None
    for entry in restrictions.get("allowed_ips") or []:
        try:
            ipaddress.ip_network(str(entry), strict=False)
        except ValueError as exc:
            raise VaultError(
                "Invalid allowed_ips entry",
                code="INVALID_ACCESS_RESTRICTIONS",
                context={"entry": str(entry)},
            ) from exc
    hours = restrictions.get("allowed_hours")
    if hours is not None:
        start, end = hours.get("start"), hours.get("end")
        if not all(isinstance(value, int) and 0 <= value <= 23 for value in (start, end)):
            raise VaultError(
                "allowed_hours needs integer start and end between 0 and 23",
                code="INVALID_ACCESS_RESTRICTIONS",
            )
        tz_name = hours.get("timezone") or "UTC"
        try:
            ZoneInfo(str(tz_name))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise VaultError(
                "allowed_hours timezone is not a known IANA zone",
                code="INVALID_ACCESS_RESTRICTIONS",
                context={"timezone": str(tz_name)},
            ) from exc
    return dict(restrictions)


def _validate_limits(*, max_tokens: int, retention_days: int, key_rotation_interval_days: int) -> None:
    if max_tokens <= 0 or retention_days <= 0 or key_rotation_interval_days <= 0:
        raise VaultError(
            "max_tokens, retention_days and key_rotation_interval_days must be positive",
            code="INVALID_VAULT_LIMITS",
        )


async def _audit(
    operation: str,
    *,
    context: RequestContext | None,
    vault_id: str | None,
    started: float,
    events: Sequence[DomainEvent] | None = None,
    error: TokenVaultError | None = None,
    request_metadata: dict[str, Any] | None = None,
) -> None:
    if isinstance(error, VaultNotFoundError) and vault_id:
        # Unknown ids stay out of the foreign key column.
        request_metadata = {**(request_metadata or {}), "vault_id": vault_id}
        vault_id = None
    await log_event(
        operation=operation,
        result="failure" if error else "success",
        context=context,
        vault_id=vault_id,
        error_message=error.message if error else None,
        request_metadata=request_metadata,
        response_metadata={"error_code": error.code} if error else None,
        processing_time_ms=_elapsed_ms(started),
        events=events,
    )


async def create_vault(
    session: AsyncSession,
    *,
    name: str,
    data_type: str,
    description: str | None = None,
    encryption_algorithm: str | None = None,
    allowed_operations: Sequence[str] | None = None,
    max_tokens: int | None = None,
    retention_days: int | None = None,
    key_rotation_interval_days: int | None = None,
    access_restrictions: dict[str, Any] | None = None,
    context: RequestContext | None = None,
) -> Vault:
    # New vaults start active with key version 1 already minted.
    settings = get_settings()
    started = time.monotonic()
    algorithm = encryption_algorithm or settings.crypto_default_algorithm
    try:
        if data_type not in DATA_TYPES:
            raise VaultError("Unsupported data type", code="INVALID_DATA_TYPE", context={"data_type": data_type})
        if not is_supported_algorithm(algorithm):
            raise VaultError(
                "Unsupported encryption algorithm",
                code="UNSUPPORTED_ALGORITHM",
                context={"algorithm": algorithm},
            )
        operations = _validate_operations(
            allowed_operations if allowed_operations is not None else DEFAULT_ALLOWED_OPERATIONS
        )
        limits = {
            "max_tokens": max_tokens or settings.vault_default_max_tokens,
            "retention_days": retention_days or settings.vault_default_retention_days,
            "key_rotation_interval_days": key_rotation_interval_days or settings.vault_default_key_rotation_days,
        }
        _validate_limits(**limits)
        restrictions = _validate_restrictions(access_restrictions)
        if await vaults_repo.get_vault_by_name(session, name) is not None:
            raise VaultConflictError("Vault name already exists", context={"name": name})

        now = _utc_now()
        vault_id = str(uuid4())
        key = build_vault_key(vault_id, key_version=1, now=now)
        vault = Vault(
            id=vault_id,
            name=name,
            description=description,
            data_type=data_type,
            status="active",
            encryption_algorithm=algorithm,
            encryption_key_reference=key.key_reference,
            current_token_count=0,
            allowed_operations=operations,
            access_restrictions=restrictions,
            last_key_rotation=now,
            created_by=context.user_id if context else None,
            created_at=now,
            **limits,
        )
        session.add(vault)
        # Parent row must exist before the key row references it.
        await session.flush()
        session.add(key)
        session.add(
            DataRetentionPolicy(
                name="Default Retention Policy",
                vault_id=vault_id,
                data_category="tokens",
                retention_days=limits["retention_days"],
                action="delete",
            )
        )
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            raise VaultConflictError("Vault name already exists", context={"name": name}) from exc
    except TokenVaultError as exc:
        await session.rollback()
        await _audit(
            "vault_create",
            context=context,
            vault_id=None,
            started=started,
            error=exc,
            request_metadata={"name": name, "data_type": data_type},
        )
        raise

    event = VaultCreated(aggregate_id=vault.id, occurred_at=vault.created_at, vault_name=name, data_type=data_type)
    logger.info("vault_created vault_id=%s data_type=%s algorithm=%s", vault.id, data_type, algorithm)
    await _audit("vault_create", context=context, vault_id=vault.id, started=started, events=[event])
    return vault


async def get_vault(session: AsyncSession, vault_id: str) -> Vault:
    vault = await vaults_repo.get_vault(session, vault_id)
    if vault is None:
        raise VaultNotFoundError("Vault not found", context={"vault_id": vault_id})
    return vault


async def update_vault(
    session: AsyncSession,
    vault_id: str,
    changes: dict[str, Any],
    *,
    context: RequestContext | None = None,
) -> Vault:
    started = time.monotonic()
    try:
        unknown = sorted(set(changes) - UPDATABLE_FIELDS)
        if unknown:
            raise VaultError("Fields cannot be updated", code="INVALID_VAULT_FIELDS", context={"fields": unknown})
        vault = await get_vault(session, vault_id)
        if vault.status == "archived":
            raise VaultError("Archived vaults are read-only", code="VAULT_ARCHIVED", context={"vault_id": vault_id})
        if "allowed_operations" in changes:
            changes["allowed_operations"] = _validate_operations(changes["allowed_operations"] or [])
        if "access_restrictions" in changes:
            changes["access_restrictions"] = _validate_restrictions(changes["access_restrictions"])
        _validate_limits(
            max_tokens=changes.get("max_tokens", vault.max_tokens),
            retention_days=changes.get("retention_days", vault.retention_days),
            key_rotation_interval_days=changes.get("key_rotation_interval_days", vault.key_rotation_interval_days),
        )
        if changes.get("max_tokens", vault.max_tokens) < vault.current_token_count:
            raise VaultError(
                "max_tokens cannot drop below the current token count",
                code="INVALID_VAULT_LIMITS",
                context={"vault_id": vault_id, "current_token_count": vault.current_token_count},
            )
        if "name" in changes and changes["name"] != vault.name:
            if await vaults_repo.get_vault_by_name(session, changes["name"]) is not None:
                raise VaultConflictError("Vault name already exists", context={"name": changes["name"]})
        for field_name, value in changes.items():
            setattr(vault, field_name, value)
        await session.commit()
    except TokenVaultError as exc:
        await session.rollback()
        await _audit("vault_update", context=context, vault_id=vault_id, started=started, error=exc)
        raise

    event = VaultUpdated(aggregate_id=vault.id, occurred_at=_utc_now(), fields=tuple(sorted(changes)))
    logger.info("vault_updated vault_id=%s fields=%s", vault.id, ",".join(sorted(changes)))
    await _audit(
        "vault_update",
        context=context,
        vault_id=vault.id,
        started=started,
        events=[event],
        request_metadata={"fields": sorted(changes)},
    )
    return vault


async def _change_status(
    session: AsyncSession, vault_id: str, target: str, *, context: RequestContext | None
) -> Vault:
    started = time.monotonic()
    try:
        vault = await get_vault(session, vault_id)
        event = lifecycle.change_status(vault, target)
        await session.commit()
    except TokenVaultError as exc:
        await session.rollback()
        await _audit(
            "vault_status_change",
            context=context,
            vault_id=vault_id,
            started=started,
            error=exc,
            request_metadata={"target_status": target},
        )
        raise
    logger.info(
        "vault_status_changed vault_id=%s transition=%s status=%s",
        vault.id,
        event.transition,
        vault.status,
    )
    await _audit("vault_status_change", context=context, vault_id=vault.id, started=started, events=[event])
    return vault


async def activate_vault(session: AsyncSession, vault_id: str, *, context: RequestContext | None = None) -> Vault:
    return await _change_status(session, vault_id, "active", context=context)


async def deactivate_vault(session: AsyncSession, vault_id: str, *, context: RequestContext | None = None) -> Vault:
    return await _change_status(session, vault_id, "inactive", context=context)


async def archive_vault(session: AsyncSession, vault_id: str, *, context: RequestContext | None = None) -> Vault:
    return await _change_status(session, vault_id, "archived", context=context)


async def rotate_key(session: AsyncSession, vault_id: str, *, context: RequestContext | None = None) -> Vault:
    # Retire and activate commit together; tokenize reads either the old or the new key, never neither.
    started = time.monotonic()
    try:
        async with transaction_lock(session, vault_lock_key(vault_id)):
            vault = await get_vault(session, vault_id)
            if vault.status == "archived":
                raise VaultError(
                    "Archived vaults cannot rotate keys",
                    code="VAULT_ARCHIVED",
                    context={"vault_id": vault_id},
                )
            previous, new_key = await rotate_vault_key(session, vault)
            await session.commit()
    except TokenVaultError as exc:
        await session.rollback()
        await _audit("vault_key_rotation", context=context, vault_id=vault_id, started=started, error=exc)
        raise
    event = VaultKeyRotated(
        aggregate_id=vault.id,
        occurred_at=vault.last_key_rotation or _utc_now(),
        previous_version=previous.key_version if previous else None,
        key_version=new_key.key_version,
    )
    await _audit("vault_key_rotation", context=context, vault_id=vault.id, started=started, events=[event])
    return vault


def _ip_allowed(ip_address: str | None, allowed: Sequence[str]) -> bool:
    if not ip_address:
        return False
    try:
        address = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return any(address in ipaddress.ip_network(str(entry), strict=False) for entry in allowed)


def _hour_allowed(now: datetime, window: dict[str, Any]) -> bool:
    tz_name = str(window.get("timezone") or "UTC")
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise VaultError(
            "Stored allowed_hours timezone is not a known IANA zone",
            code="INVALID_ACCESS_RESTRICTIONS",
            context={"timezone": tz_name},
        ) from exc
    hour = now.astimezone(tz).hour
    start, end = int(window["start"]), int(window["end"])
    if start <= end:
        return start <= hour < end
    # Window wraps midnight.
    return hour >= start or hour < end


def check_access_restrictions(vault: Vault, context: RequestContext, *, now: datetime | None = None) -> None:
    restrictions = vault.access_restrictions or {}
    allowed_ips = restrictions.get("allowed_ips")
    if allowed_ips and not _ip_allowed(context.ip_address, allowed_ips):
        raise VaultAccessDeniedError(
            "Source address is not allowed for this vault",
            context={"vault_id": vault.id, "ip_address": context.ip_address},
        )
    window = restrictions.get("allowed_hours")
    if window and not _hour_allowed(now or _utc_now(), window):
        raise VaultAccessDeniedError(
            "Vault access is not allowed at this time",
            context={"vault_id": vault.id},
        )


async def validate_for_operation(
    session: AsyncSession,
    vault_id: str,
    operation: str,
    *,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Vault:
    # Single gate for every token operation: exists, active, allowed, and reachable from here.
    vault = await vaults_repo.get_vault(session, vault_id)
    if vault is None or vault.status != "active":
        raise VaultNotFoundError("Vault not found or inactive", context={"vault_id": vault_id})
    if not lifecycle.is_operation_allowed(vault, operation):
        raise OperationNotAllowedError(
            f"Operation {operation} is not allowed on this vault",
            context={"vault_id": vault_id, "operation": operation},
        )
    if context is not None:
        check_access_restrictions(vault, context, now=now)
    return vault


async def get_vault_statistics(session: AsyncSession, vault_id: str) -> dict[str, Any]:
    vault = await get_vault(session, vault_id)
    by_status = await vaults_repo.count_tokens_by_status(session, vault.id)
    active_key = await vaults_repo.get_active_key(session, vault.id)
    utilisation = (vault.current_token_count / vault.max_tokens * 100) if vault.max_tokens else 0.0
    return {
        "vault_id": vault.id,
        "name": vault.name,
        "status": vault.status,
        "tokens_by_status": by_status,
        "total_tokens": sum(by_status.values()),
        "current_token_count": vault.current_token_count,
        "max_tokens": vault.max_tokens,
        "capacity_remaining": lifecycle.capacity_remaining(vault),
        "capacity_utilization_percent": round(utilisation, 2),
        "active_key_version": active_key.key_version if active_key else None,
        "last_key_rotation": vault.last_key_rotation.isoformat() if vault.last_key_rotation else None,
        "needs_key_rotation": lifecycle.needs_key_rotation(vault),
    }


async def list_vaults_needing_rotation(session: AsyncSession, *, now: datetime | None = None) -> list[Vault]:
    current = now or _utc_now()
    vaults = await vaults_repo.list_vaults(session, status="active", limit=10_000)
    return [vault for vault in vaults if lifecycle.needs_key_rotation(vault, now=current)]


def vault_view(vault: Vault) -> dict[str, Any]:
    return {
        "id": vault.id,
        "name": vault.name,
        "description": vault.description,
        "data_type": vault.data_type,
        "status": vault.status,
        "encryption_algorithm": vault.encryption_algorithm,
        "encryption_key_reference": vault.encryption_key_reference,
        "max_tokens": vault.max_tokens,
        "current_token_count": vault.current_token_count,
        "allowed_operations": list(vault.allowed_operations or []),
        "access_restrictions": vault.access_restrictions,
        "retention_days": vault.retention_days,
        "key_rotation_interval_days": vault.key_rotation_interval_days,
        "last_key_rotation": vault.last_key_rotation.isoformat() if vault.last_key_rotation else None,
        "created_by": vault.created_by,
        "created_at": vault.created_at.isoformat(),
        "archived_at": vault.archived_at.isoformat() if vault.archived_at else None,
    }


async def list_vaults(session: AsyncSession, **filters: Any) -> list[dict[str, Any]]:
    return [vault_view(vault) for vault in await vaults_repo.list_vaults(session, **filters)]
