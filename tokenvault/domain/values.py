from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from tokenvault.core.errors import InvalidTokenValueError


DataType = Literal["card", "ssn", "bank_account", "custom"]
VaultStatus = Literal["active", "inactive", "archived"]
VaultKeyStatus = Literal["active", "retired", "compromised"]
TokenType = Literal["random", "format_preserving", "sequential"]
TokenStatus = Literal["active", "revoked", "expired", "compromised"]
AuditResult = Literal["success", "failure", "partial"]
RiskLevel = Literal["low", "medium", "high", "critical"]
AlertSeverity = Literal["low", "medium", "high", "critical"]
AlertStatus = Literal["open", "acknowledged", "resolved", "false_positive"]
ReportType = Literal["pci_dss", "sox", "gdpr"]
ReportStatus = Literal["pending", "processing", "completed", "failed"]

DATA_TYPES: tuple[str, ...] = ("card", "ssn", "bank_account", "custom")
TOKEN_TYPES: tuple[str, ...] = ("random", "format_preserving", "sequential")
REPORT_TYPES: tuple[str, ...] = ("pci_dss", "sox", "gdpr")
RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")
ENCRYPTION_ALGORITHMS: tuple[str, ...] = ("AES-256-GCM", "AES-256-CBC", "ChaCha20-Poly1305")

OPERATIONS: tuple[str, ...] = (
    "tokenize",
    "detokenize",
    "bulk_tokenize",
    "bulk_detokenize",
    "search",
    "revoke",
    "update_metadata",
    "extend_expiration",
    "export_tokens",
    "vault_create",
    "vault_update",
    "vault_status_change",
    "vault_key_rotation",
    "cleanup_expired",
    "manual_entry",
)
DEFAULT_ALLOWED_OPERATIONS: tuple[str, ...] = (
    "tokenize",
    "detokenize",
    "bulk_tokenize",
    "bulk_detokenize",
    "search",
    "revoke",
)

TOKEN_VALUE_MIN_LENGTH = 8
TOKEN_VALUE_MAX_LENGTH = 128

UNRESOLVED_ALERT_STATUSES: tuple[str, ...] = ("open", "acknowledged")


@dataclass(frozen=True)
class EncryptionConfig:
    # Key material is never held here; only the reference and the wrapped data key.
    algorithm: str
    key_reference: str
    wrapped_key: str | None = None


@dataclass(frozen=True)
class RequestContext:
    # Explicit caller context threaded through engine and audit calls.
    user_id: str | None = None
    api_key_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    request_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def system(cls, *, request_id: str | None = None) -> "RequestContext":
        return cls(user_id="system", request_id=request_id)


def validate_token_value(value: str) -> str:
    # Reject values that are too short/long or a single repeated character.
    if not value:
        raise InvalidTokenValueError("Token value cannot be empty")
    if len(value) < TOKEN_VALUE_MIN_LENGTH:
        raise InvalidTokenValueError(
            f"Token value must be at least {TOKEN_VALUE_MIN_LENGTH} characters",
            context={"length": len(value)},
        )
    if len(value) > TOKEN_VALUE_MAX_LENGTH:
        raise InvalidTokenValueError(
            f"Token value cannot exceed {TOKEN_VALUE_MAX_LENGTH} characters",
            context={"length": len(value)},
        )
    if len(set(value)) == 1:
        raise InvalidTokenValueError("Token value cannot be a single repeated character")
    return value


def token_prefix(value: str | None) -> str | None:
    # Safe token reference for logs and error bodies.
    if not value:
        return None
    return value[:8]
