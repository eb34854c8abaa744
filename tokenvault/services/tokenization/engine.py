from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import get_settings
from tokenvault.core.errors import (
    CapacityExceededError,
    TokenIntegrityError,
    TokenizationError,
    TokenNotFoundError,
    TokenNotUsableError,
    TokenVaultError,
    VaultNotFoundError,
)
from tokenvault.domain import lifecycle
from tokenvault.domain.events import DomainEvent, TokenCreated
from tokenvault.domain.models import Token, Vault
from tokenvault.domain.values import TOKEN_TYPES, RequestContext, token_prefix
from tokenvault.persistence.locks import transaction_lock
from tokenvault.persistence.repos import tokens as tokens_repo
from tokenvault.persistence.repos import vaults as vaults_repo
from tokenvault.services.audit.pipeline import log_event
from tokenvault.services.crypto.encryption import (
    compute_checksum,
    get_encryption_service,
    hash_data,
    verify_checksum,
)
from tokenvault.services.crypto.keys import encryption_config_for, require_active_key, require_key_version
from tokenvault.services.tokenization.generators import generate_token_value
from tokenvault.services.vaults import validate_for_operation


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchCriteria:
    metadata: dict[str, Any] = field(default_factory=dict)
    token_type: str | None = None
    status: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None


@dataclass
class BulkItemResult:
    index: int
    status: str
    token_value: str | None = None
    token_id: str | None = None
    data: str | None = None
    error: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"index": self.index, "status": self.status}
        if self.token_value is not None:
            payload["token_value"] = self.token_value
        if self.token_id is not None:
            payload["token_id"] = self.token_id
        if self.data is not None:
            payload["data"] = self.data
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class BulkResult:
    items: list[BulkItemResult]
    batch_id: str | None = None

    @property
    def summary(self) -> dict[str, int]:
        succeeded = sum(1 for item in self.items if item.status == "success")
        return {"total": len(self.items), "success": succeeded, "failed": len(self.items) - succeeded}

    @property
    def result(self) -> str:
        summary = self.summary
        if summary["failed"] == 0:
            return "success"
        return "failure" if summary["success"] == 0 else "partial"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _error_detail(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, TokenVaultError):
        return {"code": exc.code, "message": exc.message}
    # Unexpected errors are reported by type only; their text may echo input.
    return {"code": "INTERNAL_ERROR", "message": type(exc).__name__}


def token_projection(token: Token) -> dict[str, Any]:
    # Public view of a token; ciphertext, hash and checksum never leave the engine.
    return {
        "id": token.id,
        "vault_id": token.vault_id,
        "token_value": token.token_value,
        "format_preserved_token": token.format_preserved_token,
        "token_type": token.token_type,
        "status": token.status,
        "metadata": dict(token.metadata_json or {}),
        "key_version": token.key_version,
        "usage_count": token.usage_count,
        "expires_at": token.expires_at.isoformat() if token.expires_at else None,
        "last_used_at": token.last_used_at.isoformat() if token.last_used_at else None,
        "created_at": token.created_at.isoformat() if token.created_at else None,
    }


def _reject_reserved_metadata(metadata: dict[str, Any] | None) -> None:
    blocked = sorted(lifecycle.RESERVED_METADATA_KEYS.intersection(metadata or {}))
    if blocked:
        raise TokenizationError("Metadata keys are reserved", code="RESERVED_METADATA_KEY", context={"keys": blocked})


async def _audit(
    operation: str,
    *,
    context: RequestContext | None,
    started: float,
    result: str = "success",
    vault_id: str | None = None,
    token_id: str | None = None,
    error: Exception | None = None,
    events: Sequence[DomainEvent] | None = None,
    request_metadata: dict[str, Any] | None = None,
    response_metadata: dict[str, Any] | None = None,
) -> None:
    request_metadata = dict(request_metadata or {})
    if isinstance(error, VaultNotFoundError) and vault_id:
        request_metadata["vault_id"] = vault_id
        vault_id = None
    response = dict(response_metadata or {})
    detail = _error_detail(error) if error is not None else None
    if detail is not None:
        result = "failure"
        response["error_code"] = detail["code"]
        if not isinstance(error, TokenVaultError):
            logger.error("token_operation_failed operation=%s error=%s", operation, detail["message"], exc_info=error)
    await log_event(
        operation=operation,
        result=result,
        context=context,
        vault_id=vault_id,
        token_id=token_id,
        error_message=detail["message"] if detail else None,
        request_metadata=request_metadata or None,
        response_metadata=response or None,
        processing_time_ms=_elapsed_ms(started),
        events=events,
    )


async def _issue_token(
    session: AsyncSession,
    *,
    vault_id: str,
    plaintext: str,
    token_type: str,
    metadata: dict[str, Any] | None,
    expires_at: datetime | None,
    context: RequestContext | None,
    operation: str,
) -> tuple[Token, list[DomainEvent], bool]:
    # One committed transaction per token: dedup lookup, capacity slot and insert.
    if token_type not in TOKEN_TYPES:
        raise TokenizationError("Unsupported token type", code="INVALID_TOKEN_TYPE", context={"token_type": token_type})
    if not plaintext:
        raise TokenizationError("Data to tokenize cannot be empty", code="EMPTY_DATA", context={"vault_id": vault_id})
    if expires_at is not None and expires_at <= _utc_now():
        raise TokenizationError("Expiration must be in the future", code="INVALID_EXPIRATION")
    data_hash = hash_data(plaintext)
    events: list[DomainEvent] = []

    async with transaction_lock(session, f"tokenize:{vault_id}:{data_hash}"):
        vault = await validate_for_operation(session, vault_id, operation, context=context)
        existing = await tokens_repo.find_active_by_hash(session, vault_id=vault.id, data_hash=data_hash)
        if existing is not None:
            if lifecycle.is_usable(existing):
                events.append(lifecycle.record_usage(existing))
                await session.commit()
                return existing, events, False
            # Active but past expires_at; retire it so the new token can take its place.
            events.append(lifecycle.expire(existing))
            await vaults_repo.release_token_slots(session, vault.id)
            await session.flush()

        key = await require_active_key(session, vault)
        ciphertext = get_encryption_service().encrypt(plaintext, encryption_config_for(vault, key))
        token_value = await generate_token_value(session, plaintext, token_type)
        if not await vaults_repo.reserve_token_slot(session, vault.id):
            raise CapacityExceededError(
                "Vault has reached its token capacity",
                context={"vault_id": vault.id, "max_tokens": vault.max_tokens},
            )
        token = Token(
            id=str(uuid4()),
            vault_id=vault.id,
            token_value=token_value,
            format_preserved_token=token_value if token_type == "format_preserving" else None,
            token_type=token_type,
            metadata_json=dict(metadata or {}),
            expires_at=expires_at,
            key_version=key.key_version,
            status="active",
            encrypted_data=ciphertext,
            data_hash=data_hash,
            checksum=compute_checksum(token_value, data_hash),
            usage_count=0,
            created_at=_utc_now(),
        )
        session.add(token)
        try:
            await session.commit()
        except IntegrityError:
            # Lost a race outside this process; reuse the winner's token.
            await session.rollback()
            winner = await tokens_repo.find_active_by_hash(session, vault_id=vault.id, data_hash=data_hash)
            if winner is None or not lifecycle.is_usable(winner):
                raise TokenizationError(
                    "Token could not be stored",
                    code="TOKEN_PERSIST_CONFLICT",
                    context={"vault_id": vault.id},
                )
            usage = lifecycle.record_usage(winner)
            await session.commit()
            return winner, [usage], False

    await session.refresh(vault, ["current_token_count"])
    events.append(
        TokenCreated(
            aggregate_id=token.id,
            occurred_at=token.created_at,
            vault_id=vault.id,
            token_type=token_type,
            key_version=key.key_version,
        )
    )
    logger.info(
        "token_created vault_id=%s token_prefix=%s token_type=%s key_version=%s",
        vault.id,
        token_prefix(token.token_value),
        token_type,
        key.key_version,
    )
    return token, events, True


async def tokenize(
    session: AsyncSession,
    *,
    vault_id: str,
    plaintext: str,
    token_type: str = "random",
    metadata: dict[str, Any] | None = None,
    expires_at: datetime | None = None,
    context: RequestContext | None = None,
) -> Token:
    started = time.monotonic()
    try:
        _reject_reserved_metadata(metadata)
        token, events, created = await _issue_token(
            session,
            vault_id=vault_id,
            plaintext=plaintext,
            token_type=token_type,
            metadata=metadata,
            expires_at=expires_at,
            context=context,
            operation="tokenize",
        )
    except Exception as exc:  # noqa: BLE001 - audited, then re-raised
        await session.rollback()
        await _audit(
            "tokenize",
            context=context,
            started=started,
            vault_id=vault_id,
            error=exc,
            request_metadata={"token_type": token_type},
        )
        raise
    await _audit(
        "tokenize",
        context=context,
        started=started,
        vault_id=token.vault_id,
        token_id=token.id,
        events=events,
        request_metadata={"token_type": token_type},
        response_metadata={"deduplicated": not created, "token_prefix": token_prefix(token.token_value)},
    )
    return token


async def _reveal(
    session: AsyncSession,
    token_value: str,
    *,
    operation: str,
    context: RequestContext | None,
) -> tuple[Token, str, list[DomainEvent]]:
    # Shared by single and bulk detokenize; commits usage or the compromise mark.
    settings = get_settings()
    token = await tokens_repo.get_by_value(session, token_value)
    if token is None:
        raise TokenNotFoundError("Token not found", context={"token_prefix": token_prefix(token_value)})
    if not lifecycle.is_usable(token):
        raise TokenNotUsableError(
            "Token is not active or has expired",
            context={"token_prefix": token_prefix(token_value), "status": token.status},
        )
    vault = await validate_for_operation(session, token.vault_id, operation, context=context)

    if settings.detokenize_verify_checksum and not verify_checksum(token.token_value, token.data_hash, token.checksum):
        event = await _compromise(session, token, vault, reason="checksum_mismatch")
        raise TokenIntegrityError(
            "Token integrity check failed; token marked compromised",
            events=(event,),
            context={"token_prefix": token_prefix(token_value), "vault_id": vault.id},
        )

    key = await require_key_version(session, vault, token.key_version)
    plaintext = get_encryption_service().decrypt(token.encrypted_data, encryption_config_for(vault, key))
    if settings.detokenize_verify_checksum and hash_data(plaintext) != token.data_hash:
        event = await _compromise(session, token, vault, reason="data_hash_mismatch")
        raise TokenIntegrityError(
            "Token integrity check failed; token marked compromised",
            events=(event,),
            context={"token_prefix": token_prefix(token_value), "vault_id": vault.id},
        )
    usage = lifecycle.record_usage(token)
    await session.commit()
    return token, plaintext, [usage]


async def _compromise(session: AsyncSession, token: Token, vault: Vault, *, reason: str) -> DomainEvent:
    event = lifecycle.mark_compromised(token, reason=reason)
    await vaults_repo.release_token_slots(session, vault.id)
    await session.commit()
    logger.warning(
        "token_compromised vault_id=%s token_prefix=%s reason=%s",
        vault.id,
        token_prefix(token.token_value),
        reason,
    )
    return event


async def detokenize(session: AsyncSession, *, token_value: str, context: RequestContext | None = None) -> str:
    started = time.monotonic()
    token: Token | None = None
    try:
        token, plaintext, events = await _reveal(session, token_value, operation="detokenize", context=context)
    except Exception as exc:  # noqa: BLE001 - audited, then re-raised
        await session.rollback()
        if token is None and isinstance(exc, TokenVaultError):
            token = await tokens_repo.get_by_value(session, token_value)
        await _audit(
            "detokenize",
            context=context,
            started=started,
            vault_id=token.vault_id if token else None,
            token_id=token.id if token else None,
            error=exc,
            request_metadata={"token_prefix": token_prefix(token_value)},
            events=exc.events if isinstance(exc, TokenIntegrityError) else None,
        )
        raise
    await _audit(
        "detokenize",
        context=context,
        started=started,
        vault_id=token.vault_id,
        token_id=token.id,
        events=events,
        request_metadata={"token_prefix": token_prefix(token_value)},
    )
    return plaintext


async def bulk_tokenize(
    session: AsyncSession,
    *,
    vault_id: str,
    items: Sequence[str],
    token_type: str = "random",
    common_metadata: dict[str, Any] | None = None,
    expires_at: datetime | None = None,
    context: RequestContext | None = None,
) -> BulkResult:
    # Items commit independently so one bad item never aborts the batch.
    settings = get_settings()
    started = time.monotonic()
    request_metadata = {"item_count": len(items), "token_type": token_type}
    try:
        _reject_reserved_metadata(common_metadata)
        if not items:
            raise TokenizationError("Bulk request has no items", code="EMPTY_BATCH")
        if len(items) > settings.token_bulk_max_items:
            raise TokenizationError(
                "Bulk request exceeds the item limit",
                code="BULK_LIMIT_EXCEEDED",
                context={"item_count": len(items), "max_items": settings.token_bulk_max_items},
            )
        await validate_for_operation(session, vault_id, "bulk_tokenize", context=context)
    except Exception as exc:  # noqa: BLE001 - audited, then re-raised
        await session.rollback()
        await _audit(
            "bulk_tokenize",
            context=context,
            started=started,
            vault_id=vault_id,
            error=exc,
            request_metadata=request_metadata,
        )
        raise

    batch_id = uuid4().hex
    results: list[BulkItemResult] = []
    events: list[DomainEvent] = []
    for index, plaintext in enumerate(items):
        metadata = {**(common_metadata or {}), "batch_id": batch_id, "batch_index": index}
        try:
            token, item_events, _created = await _issue_token(
                session,
                vault_id=vault_id,
                plaintext=plaintext,
                token_type=token_type,
                metadata=metadata,
                expires_at=expires_at,
                context=context,
                operation="bulk_tokenize",
            )
        except Exception as exc:  # noqa: BLE001 - recorded on the item
            await session.rollback()
            results.append(BulkItemResult(index=index, status="failed", error=_error_detail(exc)))
            continue
        events.extend(item_events)
        results.append(
            BulkItemResult(index=index, status="success", token_value=token.token_value, token_id=token.id)
        )

    outcome = BulkResult(items=results, batch_id=batch_id)
    logger.info("bulk_tokenize_completed vault_id=%s batch_id=%s summary=%s", vault_id, batch_id, outcome.summary)
    await _audit(
        "bulk_tokenize",
        context=context,
        started=started,
        result=outcome.result,
        vault_id=vault_id,
        events=events,
        request_metadata={**request_metadata, "batch_id": batch_id},
        response_metadata={"summary": outcome.summary},
    )
    return outcome


async def bulk_detokenize(
    session: AsyncSession,
    *,
    token_values: Sequence[str],
    context: RequestContext | None = None,
) -> BulkResult:
    settings = get_settings()
    started = time.monotonic()
    request_metadata = {"item_count": len(token_values)}
    if not token_values or len(token_values) > settings.token_bulk_max_items:
        exc = TokenizationError(
            "Bulk request must contain between 1 and the configured maximum items",
            code="BULK_LIMIT_EXCEEDED" if token_values else "EMPTY_BATCH",
            context={"item_count": len(token_values), "max_items": settings.token_bulk_max_items},
        )
        await _audit("bulk_detokenize", context=context, started=started, error=exc, request_metadata=request_metadata)
        raise exc

    results: list[BulkItemResult] = []
    events: list[DomainEvent] = []
    vault_ids: set[str] = set()
    for index, token_value in enumerate(token_values):
        try:
            token, plaintext, item_events = await _reveal(
                session, token_value, operation="bulk_detokenize", context=context
            )
        except Exception as exc:  # noqa: BLE001 - recorded on the item
            await session.rollback()
            if isinstance(exc, TokenIntegrityError):
                events.extend(exc.events)
            results.append(BulkItemResult(index=index, status="failed", error=_error_detail(exc)))
            continue
        vault_ids.add(token.vault_id)
        events.extend(item_events)
        results.append(
            BulkItemResult(
                index=index,
                status="success",
                token_value=token.token_value,
                token_id=token.id,
                data=plaintext,
            )
        )

    outcome = BulkResult(items=results)
    await _audit(
        "bulk_detokenize",
        context=context,
        started=started,
        result=outcome.result,
        vault_id=next(iter(vault_ids)) if len(vault_ids) == 1 else None,
        events=events,
        request_metadata=request_metadata,
        response_metadata={"summary": outcome.summary},
    )
    return outcome


async def search(
    session: AsyncSession,
    *,
    vault_id: str,
    criteria: SearchCriteria | None = None,
    limit: int = 100,
    context: RequestContext | None = None,
) -> list[dict[str, Any]]:
    settings = get_settings()
    started = time.monotonic()
    criteria = criteria or SearchCriteria()
    request_metadata = {
        "metadata_keys": sorted(criteria.metadata),
        "token_type": criteria.token_type,
        "limit": limit,
    }
    try:
        if limit <= 0:
            raise TokenizationError("Search limit must be positive", code="INVALID_LIMIT")
        await validate_for_operation(session, vault_id, "search", context=context)
        tokens = await tokens_repo.search_tokens(
            session,
            vault_id=vault_id,
            metadata=criteria.metadata,
            token_type=criteria.token_type,
            status=criteria.status,
            created_after=criteria.created_after,
            created_before=criteria.created_before,
            limit=min(limit, settings.token_search_max_limit),
        )
    except Exception as exc:  # noqa: BLE001 - audited, then re-raised
        await session.rollback()
        await _audit(
            "search",
            context=context,
            started=started,
            vault_id=vault_id,
            error=exc,
            request_metadata=request_metadata,
        )
        raise
    await _audit(
        "search",
        context=context,
        started=started,
        vault_id=vault_id,
        request_metadata=request_metadata,
        response_metadata={"result_count": len(tokens)},
    )
    return [token_projection(token) for token in tokens]


async def get_token(session: AsyncSession, token_id: str) -> Token:
    token = await tokens_repo.get_by_id(session, token_id)
    if token is None:
        raise TokenNotFoundError("Token not found", context={"token_id": token_id})
    return token


async def revoke_token(
    session: AsyncSession,
    *,
    token_id: str,
    reason: str | None = None,
    context: RequestContext | None = None,
) -> Token:
    started = time.monotonic()
    token: Token | None = None
    try:
        token = await get_token(session, token_id)
        await validate_for_operation(session, token.vault_id, "revoke", context=context)
        event = lifecycle.revoke(token, reason=reason)
        await vaults_repo.release_token_slots(session, token.vault_id)
        await session.commit()
    except Exception as exc:  # noqa: BLE001 - audited, then re-raised
        await session.rollback()
        await _audit(
            "revoke",
            context=context,
            started=started,
            vault_id=token.vault_id if token else None,
            token_id=token.id if token else None,
            error=exc,
            request_metadata={"token_id": token_id},
        )
        raise
    logger.info("token_revoked vault_id=%s token_prefix=%s", token.vault_id, token_prefix(token.token_value))
    await _audit(
        "revoke",
        context=context,
        started=started,
        vault_id=token.vault_id,
        token_id=token.id,
        events=[event],
        request_metadata={"reason": reason},
    )
    return token


async def extend_expiration(
    session: AsyncSession,
    *,
    token_id: str,
    expires_at: datetime,
    context: RequestContext | None = None,
) -> Token:
    started = time.monotonic()
    token: Token | None = None
    try:
        token = await get_token(session, token_id)
        event = lifecycle.extend_expiration(token, expires_at=expires_at)
        await session.commit()
    except Exception as exc:  # noqa: BLE001 - audited, then re-raised
        await session.rollback()
        await _audit(
            "extend_expiration",
            context=context,
            started=started,
            vault_id=token.vault_id if token else None,
            token_id=token.id if token else None,
            error=exc,
        )
        raise
    await _audit(
        "extend_expiration",
        context=context,
        started=started,
        vault_id=token.vault_id,
        token_id=token.id,
        events=[event],
    )
    return token


async def update_metadata(
    session: AsyncSession,
    *,
    token_id: str,
    patch: dict[str, Any],
    context: RequestContext | None = None,
) -> Token:
    started = time.monotonic()
    token: Token | None = None
    try:
        token = await get_token(session, token_id)
        event = lifecycle.update_metadata(token, patch)
        await session.commit()
    except Exception as exc:  # noqa: BLE001 - audited, then re-raised
        await session.rollback()
        await _audit(
            "update_metadata",
            context=context,
            started=started,
            vault_id=token.vault_id if token else None,
            token_id=token.id if token else None,
            error=exc,
            request_metadata={"keys": sorted(patch)},
        )
        raise
    await _audit(
        "update_metadata",
        context=context,
        started=started,
        vault_id=token.vault_id,
        token_id=token.id,
        events=[event],
        request_metadata={"keys": sorted(patch)},
    )
    return token


async def get_token_statistics(session: AsyncSession, *, vault_id: str | None = None) -> dict[str, Any]:
    settings = get_settings()
    now = _utc_now()
    stats = await tokens_repo.token_statistics(session, vault_id=vault_id)
    stats["expiring_soon"] = await tokens_repo.count_expiring_between(
        session,
        start=now,
        end=now + timedelta(hours=settings.token_expiring_soon_hours),
        vault_id=vault_id,
    )
    stats["vault_id"] = vault_id
    return stats


async def cleanup_expired_tokens(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int = 500,
    context: RequestContext | None = None,
) -> int:
    # Scheduled sweep: active tokens past expires_at become expired and free their slot.
    started = time.monotonic()
    current = now or _utc_now()
    expired = 0
    per_vault: Counter[str] = Counter()
    while True:
        tokens = await tokens_repo.list_expired_active(session, now=current, limit=batch_size)
        if not tokens:
            break
        batch: Counter[str] = Counter()
        for token in tokens:
            lifecycle.expire(token, now=current)
            batch[token.vault_id] += 1
        for vault_id, count in batch.items():
            await vaults_repo.release_token_slots(session, vault_id, count)
        await session.commit()
        expired += len(tokens)
        per_vault.update(batch)
    if expired:
        logger.info("expired_tokens_cleaned count=%s vaults=%s", expired, len(per_vault))
    await _audit(
        "cleanup_expired",
        context=context or RequestContext.system(),
        started=started,
        response_metadata={"expired_count": expired, "vaults": dict(per_vault)},
    )
    return expired
