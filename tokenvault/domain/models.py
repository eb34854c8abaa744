from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class UtcDateTime(TypeDecorator):
    # Always hand back timezone-aware UTC datetimes, including on SQLite.
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Vault(Base):
    __tablename__ = "vaults"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    data_type: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)
    encryption_algorithm: Mapped[str] = mapped_column(String(32))
    # Reference of the active key version; key bytes live behind the KMS.
    encryption_key_reference: Mapped[str] = mapped_column(String(255))
    max_tokens: Mapped[int] = mapped_column(BigInteger)
    current_token_count: Mapped[int] = mapped_column(BigInteger, default=0)
    allowed_operations: Mapped[list[str]] = mapped_column(JsonType, default=list)
    # Optional {"allowed_ips": [...], "allowed_hours": {"start": 8, "end": 18}}.
    access_restrictions: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    retention_days: Mapped[int] = mapped_column(Integer)
    key_rotation_interval_days: Mapped[int] = mapped_column(Integer)
    last_key_rotation: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)
    archived_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class VaultKey(Base):
    __tablename__ = "vault_keys"
    __table_args__ = (
        UniqueConstraint("vault_id", "key_version", name="uq_vault_keys_version"),
        # At most one active key per vault.
        Index(
            "uq_vault_keys_active",
            "vault_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    vault_id: Mapped[str] = mapped_column(String(36), ForeignKey("vaults.id"), index=True)
    key_version: Mapped[int] = mapped_column(Integer)
    key_reference: Mapped[str] = mapped_column(String(255), unique=True)
    provider: Mapped[str] = mapped_column(String(32))
    # Data key wrapped by the KMS key-encryption key.
    encrypted_key: Mapped[str] = mapped_column(Text)
    key_hash: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16), default="active")
    activated_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    retired_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class Token(Base):
    __tablename__ = "tokens"
    __table_args__ = (
        # One active token per (vault, plaintext).
        Index(
            "uq_tokens_vault_hash_active",
            "vault_id",
            "data_hash",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_tokens_status_expires_at", "status", "expires_at"),
        Index("ix_tokens_vault_created_at", "vault_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    vault_id: Mapped[str] = mapped_column(String(36), ForeignKey("vaults.id"), index=True)
    token_value: Mapped[str] = mapped_column(String(128), unique=True)
    format_preserved_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    token_type: Mapped[str] = mapped_column(String(32))
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JsonType, default=dict)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    key_version: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default="active", index=True)
    encrypted_data: Mapped[str] = mapped_column(Text)
    data_hash: Mapped[str] = mapped_column(String(64))
    checksum: Mapped[str] = mapped_column(String(64))
    usage_count: Mapped[int] = mapped_column(BigInteger, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class TokenSequence(Base):
    __tablename__ = "token_sequences"

    # Shared counters for sequential token values.
    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_ip_created_at", "ip_address", "created_at"),
        Index("ix_audit_logs_user_operation_created_at", "user_id", "operation", "created_at"),
        Index("ix_audit_logs_result_created_at", "result", "created_at"),
        Index("ix_audit_logs_archived_created_at", "archived_at", "created_at"),
    )

    # Id is assigned at enqueue time so callers can trace the record before it lands.
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    vault_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("vaults.id", ondelete="SET NULL"), nullable=True, index=True
    )
    token_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("tokens.id", ondelete="SET NULL"), nullable=True, index=True
    )
    operation: Mapped[str] = mapped_column(String(64), index=True)
    result: Mapped[str] = mapped_column(String(16))
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    api_key_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    request_metadata: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    response_metadata: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[str] = mapped_column(String(16), default="low", index=True)
    pci_relevant: Mapped[bool] = mapped_column(Boolean, default=False)
    compliance_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, index=True)
    # Bookkeeping only; business fields are append-only.
    processed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)


class SecurityAlert(Base):
    __tablename__ = "security_alerts"
    __table_args__ = (
        Index("ix_security_alerts_type_status_created_at", "type", "status", "created_at"),
        Index("ix_security_alerts_auto_resolve", "status", "auto_resolve_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    alert_type: Mapped[str] = mapped_column("type", String(64))
    severity: Mapped[str] = mapped_column(String(16), index=True)
    status: Mapped[str] = mapped_column(String(16), default="open", index=True)
    title: Mapped[str] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    vault_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("vaults.id", ondelete="SET NULL"), nullable=True
    )
    count: Mapped[int] = mapped_column(Integer, default=1)
    first_occurrence: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    last_occurrence: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JsonType, default=dict)
    acknowledged_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    triggering_audit_log_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("audit_logs.id", ondelete="SET NULL"), nullable=True
    )
    auto_resolve_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now, onupdate=_utc_now)


class ComplianceReport(Base):
    __tablename__ = "compliance_reports"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    report_type: Mapped[str] = mapped_column(String(16), index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    progress: Mapped[int] = mapped_column(Integer, default=0)
    # {"start_date", "end_date", "vault_id"} as ISO strings.
    parameters: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    summary: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    generated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class DataRetentionPolicy(Base):
    __tablename__ = "data_retention_policies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255))
    # Null vault scope applies the policy across all vaults.
    vault_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("vaults.id", ondelete="CASCADE"), nullable=True
    )
    data_category: Mapped[str] = mapped_column(String(32))
    retention_days: Mapped[int] = mapped_column(Integer)
    action: Mapped[str] = mapped_column(String(16))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_executed_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    last_affected_rows: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)


class ApiKey(Base):
    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    role: Mapped[str] = mapped_column(String(16))
    key_prefix: Mapped[str] = mapped_column(String(16))
    key_hash: Mapped[str] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(UtcDateTime, default=_utc_now)
    last_used_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UtcDateTime, nullable=True)
