from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from tokenvault.core.errors import (
    InvalidVaultTransitionError,
    TokenizationError,
    TokenNotRevocableError,
    TokenNotUsableError,
)
from tokenvault.domain.events import (
    TokenCompromised,
    TokenExpirationExtended,
    TokenExpired,
    TokenMetadataUpdated,
    TokenRevoked,
    TokenUsed,
    VaultStatusChanged,
)
from tokenvault.domain.models import Token, Vault
from tokenvault.domain.values import token_prefix


# Lifecycle trail keys written by transitions; callers cannot overwrite them.
RESERVED_METADATA_KEYS = frozenset(
    {"revocation", "expiration", "compromise", "expiration_extensions", "batch_id", "batch_index"}
)

_VAULT_TRANSITIONS: dict[str, tuple[set[str], str]] = {
    "active": ({"inactive"}, "activation"),
    "inactive": ({"active"}, "deactivation"),
    "archived": ({"active", "inactive"}, "archiving"),
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _token_ref(token: Token) -> dict[str, Any]:
    return {"token_id": token.id, "token_prefix": token_prefix(token.token_value)}


def is_expired(token: Token, *, now: datetime | None = None) -> bool:
    if token.expires_at is None:
        return False
    return token.expires_at <= (now or _utc_now())


def is_usable(token: Token, *, now: datetime | None = None) -> bool:
    return token.status == "active" and not is_expired(token, now=now)


def will_expire_within(token: Token, hours: int, *, now: datetime | None = None) -> bool:
    # Pre-alert window for external schedulers; already-expired tokens do not count.
    if token.expires_at is None:
        return False
    current = now or _utc_now()
    return current < token.expires_at <= current + timedelta(hours=hours)


def _append_trail(token: Token, key: str, entry: dict[str, Any]) -> None:
    # Reassign the dict so JSON column changes are flushed.
    metadata = dict(token.metadata_json or {})
    metadata[key] = entry
    token.metadata_json = metadata


def record_usage(token: Token, *, now: datetime | None = None) -> TokenUsed:
    current = now or _utc_now()
    if not is_usable(token, now=current):
        raise TokenNotUsableError(
            "Token is not active or has expired",
            context={**_token_ref(token), "status": token.status},
        )
    token.usage_count = (token.usage_count or 0) + 1
    token.last_used_at = current
    return TokenUsed(
        aggregate_id=token.id,
        occurred_at=current,
        vault_id=token.vault_id,
        usage_count=token.usage_count,
    )


def revoke(token: Token, *, reason: str | None = None, now: datetime | None = None) -> TokenRevoked:
    current = now or _utc_now()
    if token.status != "active":
        raise TokenNotRevocableError(
            "Only active tokens can be revoked",
            context={**_token_ref(token), "status": token.status},
        )
    token.status = "revoked"
    _append_trail(token, "revocation", {"reason": reason, "revoked_at": current.isoformat()})
    return TokenRevoked(aggregate_id=token.id, occurred_at=current, vault_id=token.vault_id, reason=reason)


def expire(token: Token, *, now: datetime | None = None) -> TokenExpired:
    current = now or _utc_now()
    token.status = "expired"
    _append_trail(token, "expiration", {"expired_at": current.isoformat()})
    return TokenExpired(aggregate_id=token.id, occurred_at=current, vault_id=token.vault_id)


def mark_compromised(token: Token, *, reason: str, now: datetime | None = None) -> TokenCompromised:
    current = now or _utc_now()
    token.status = "compromised"
    _append_trail(token, "compromise", {"reason": reason, "compromised_at": current.isoformat()})
    return TokenCompromised(aggregate_id=token.id, occurred_at=current, vault_id=token.vault_id, reason=reason)


def extend_expiration(
    token: Token, *, expires_at: datetime, now: datetime | None = None
) -> TokenExpirationExtended:
    current = now or _utc_now()
    if not is_usable(token, now=current):
        raise TokenNotUsableError(
            "Only usable tokens can be extended",
            context={**_token_ref(token), "status": token.status},
        )
    if expires_at <= current or (token.expires_at is not None and expires_at <= token.expires_at):
        raise TokenizationError(
            "New expiration must be in the future and later than the current one",
            code="INVALID_EXPIRATION",
            context=_token_ref(token),
        )
    previous = token.expires_at
    metadata = dict(token.metadata_json or {})
    history = list(metadata.get("expiration_extensions") or [])
    history.append(
        {
            "previous_expires_at": previous.isoformat() if previous else None,
            "expires_at": expires_at.isoformat(),
            "extended_at": current.isoformat(),
        }
    )
    metadata["expiration_extensions"] = history
    token.metadata_json = metadata
    token.expires_at = expires_at
    return TokenExpirationExtended(
        aggregate_id=token.id,
        occurred_at=current,
        vault_id=token.vault_id,
        previous_expires_at=previous.isoformat() if previous else None,
        expires_at=expires_at.isoformat(),
    )


def update_metadata(
    token: Token, patch: dict[str, Any], *, now: datetime | None = None
) -> TokenMetadataUpdated:
    current = now or _utc_now()
    if token.status != "active":
        raise TokenNotUsableError(
            "Only active tokens accept metadata updates",
            context={**_token_ref(token), "status": token.status},
        )
    blocked = sorted(RESERVED_METADATA_KEYS.intersection(patch))
    if blocked:
        raise TokenizationError(
            "Metadata keys are reserved",
            code="RESERVED_METADATA_KEY",
            context={**_token_ref(token), "keys": blocked},
        )
    token.metadata_json = {**(token.metadata_json or {}), **patch}
    return TokenMetadataUpdated(
        aggregate_id=token.id,
        occurred_at=current,
        vault_id=token.vault_id,
        keys=tuple(sorted(patch)),
    )


def is_operation_allowed(vault: Vault, operation: str) -> bool:
    return operation in (vault.allowed_operations or [])


def needs_key_rotation(vault: Vault, *, now: datetime | None = None) -> bool:
    if vault.last_key_rotation is None:
        return True
    current = now or _utc_now()
    return current >= vault.last_key_rotation + timedelta(days=vault.key_rotation_interval_days)


def capacity_remaining(vault: Vault) -> int:
    return max(0, int(vault.max_tokens) - int(vault.current_token_count or 0))


def change_status(vault: Vault, target: str, *, now: datetime | None = None) -> VaultStatusChanged:
    # activate/deactivate/archive all funnel through here so observers can tell them apart.
    current = now or _utc_now()
    allowed_from, transition = _VAULT_TRANSITIONS[target]
    if vault.status not in allowed_from:
        raise InvalidVaultTransitionError(
            f"Vault cannot move from {vault.status} to {target}",
            context={"vault_id": vault.id, "status": vault.status},
        )
    previous = vault.status
    vault.status = target
    if target == "archived":
        vault.archived_at = current
    return VaultStatusChanged(
        aggregate_id=vault.id,
        occurred_at=current,
        previous_status=previous,
        status=target,
        transition=transition,
    )
