from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, ClassVar


@dataclass(frozen=True)
class DomainEvent:
    # Effects returned by aggregate operations; callers forward them to the audit pipeline.
    aggregate_id: str
    occurred_at: datetime

    name: ClassVar[str] = "domain_event"

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["occurred_at"] = self.occurred_at.isoformat()
        payload["event"] = self.name
        return payload


@dataclass(frozen=True)
class TokenCreated(DomainEvent):
    vault_id: str
    token_type: str
    key_version: int

    name: ClassVar[str] = "token.created"


@dataclass(frozen=True)
class TokenUsed(DomainEvent):
    vault_id: str
    usage_count: int

    name: ClassVar[str] = "token.used"


@dataclass(frozen=True)
class TokenRevoked(DomainEvent):
    vault_id: str
    reason: str | None

    name: ClassVar[str] = "token.revoked"


@dataclass(frozen=True)
class TokenExpired(DomainEvent):
    vault_id: str

    name: ClassVar[str] = "token.expired"


@dataclass(frozen=True)
class TokenCompromised(DomainEvent):
    vault_id: str
    reason: str

    name: ClassVar[str] = "token.compromised"


@dataclass(frozen=True)
class TokenExpirationExtended(DomainEvent):
    vault_id: str
    previous_expires_at: str | None
    expires_at: str

    name: ClassVar[str] = "token.expiration_extended"


@dataclass(frozen=True)
class TokenMetadataUpdated(DomainEvent):
    vault_id: str
    keys: tuple[str, ...]

    name: ClassVar[str] = "token.metadata_updated"


@dataclass(frozen=True)
class VaultCreated(DomainEvent):
    vault_name: str
    data_type: str

    name: ClassVar[str] = "vault.created"


@dataclass(frozen=True)
class VaultUpdated(DomainEvent):
    fields: tuple[str, ...]

    name: ClassVar[str] = "vault.updated"


@dataclass(frozen=True)
class VaultStatusChanged(DomainEvent):
    previous_status: str
    status: str
    # activation | deactivation | archiving
    transition: str

    name: ClassVar[str] = "vault.status_changed"


@dataclass(frozen=True)
class VaultKeyRotated(DomainEvent):
    previous_version: int | None
    key_version: int

    name: ClassVar[str] = "vault.key_rotated"


def event_names(events: list[DomainEvent]) -> list[str]:
    return [event.name for event in events]
