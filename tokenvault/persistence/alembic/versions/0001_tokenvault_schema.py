"""tokenvault schema: vaults, keys, tokens, audit, alerts, reports, retention, api keys

Revision ID: 0001_tokenvault_schema
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_tokenvault_schema"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "vaults",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("data_type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("encryption_algorithm", sa.String(32), nullable=False),
        sa.Column("encryption_key_reference", sa.String(255), nullable=False),
        sa.Column("max_tokens", sa.BigInteger(), nullable=False),
        sa.Column("current_token_count", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("allowed_operations", postgresql.JSONB(), nullable=False),
        sa.Column("access_restrictions", postgresql.JSONB(), nullable=True),
        sa.Column("retention_days", sa.Integer(), nullable=False),
        sa.Column("key_rotation_interval_days", sa.Integer(), nullable=False),
        _ts("last_key_rotation"),
        sa.Column("created_by", sa.String(255), nullable=True),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        _ts("archived_at"),
    )
    op.create_index("ix_vaults_status", "vaults", ["status"])

    op.create_table(
        "vault_keys",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("vault_id", sa.String(36), sa.ForeignKey("vaults.id"), nullable=False),
        sa.Column("key_version", sa.Integer(), nullable=False),
        sa.Column("key_reference", sa.String(255), nullable=False, unique=True),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("encrypted_key", sa.Text(), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        _ts("activated_at"),
        _ts("retired_at"),
        _ts("created_at", nullable=False),
        sa.UniqueConstraint("vault_id", "key_version", name="uq_vault_keys_version"),
    )
    op.create_index("ix_vault_keys_vault_id", "vault_keys", ["vault_id"])
    op.create_index(
        "uq_vault_keys_active",
        "vault_keys",
        ["vault_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "tokens",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("vault_id", sa.String(36), sa.ForeignKey("vaults.id"), nullable=False),
        sa.Column("token_value", sa.String(128), nullable=False, unique=True),
        sa.Column("format_preserved_token", sa.String(128), nullable=True),
        sa.Column("token_type", sa.String(32), nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False),
        _ts("expires_at"),
        sa.Column("key_version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("encrypted_data", sa.Text(), nullable=False),
        sa.Column("data_hash", sa.String(64), nullable=False),
        sa.Column("checksum", sa.String(64), nullable=False),
        sa.Column("usage_count", sa.BigInteger(), nullable=False, server_default="0"),
        _ts("last_used_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )
    op.create_index("ix_tokens_vault_id", "tokens", ["vault_id"])
    op.create_index("ix_tokens_status", "tokens", ["status"])
    op.create_index("ix_tokens_status_expires_at", "tokens", ["status", "expires_at"])
    op.create_index("ix_tokens_vault_created_at", "tokens", ["vault_id", "created_at"])
    # Dedup only applies to live tokens; revoked or expired rows may share a hash.
    op.create_index(
        "uq_tokens_vault_hash_active",
        "tokens",
        ["vault_id", "data_hash"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "token_sequences",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("value", sa.BigInteger(), nullable=False),
        _ts("updated_at", nullable=False),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("vault_id", sa.String(36), sa.ForeignKey("vaults.id", ondelete="SET NULL"), nullable=True),
        sa.Column("token_id", sa.String(36), sa.ForeignKey("tokens.id", ondelete="SET NULL"), nullable=True),
        sa.Column("operation", sa.String(64), nullable=False),
        sa.Column("result", sa.String(16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("api_key_id", sa.String(255), nullable=True),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("request_id", sa.String(255), nullable=True),
        sa.Column("request_metadata", postgresql.JSONB(), nullable=True),
        sa.Column("response_metadata", postgresql.JSONB(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("risk_level", sa.String(16), nullable=False, server_default="low"),
        sa.Column("pci_relevant", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("compliance_reference", sa.String(64), nullable=True),
        _ts("created_at", nullable=False),
        _ts("processed_at"),
        _ts("archived_at"),
    )
    op.create_index("ix_audit_logs_vault_id", "audit_logs", ["vault_id"])
    op.create_index("ix_audit_logs_token_id", "audit_logs", ["token_id"])
    op.create_index("ix_audit_logs_operation", "audit_logs", ["operation"])
    op.create_index("ix_audit_logs_request_id", "audit_logs", ["request_id"])
    op.create_index("ix_audit_logs_risk_level", "audit_logs", ["risk_level"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])
    op.create_index("ix_audit_logs_ip_created_at", "audit_logs", ["ip_address", "created_at"])
    op.create_index(
        "ix_audit_logs_user_operation_created_at",
        "audit_logs",
        ["user_id", "operation", "created_at"],
    )
    op.create_index("ix_audit_logs_result_created_at", "audit_logs", ["result", "created_at"])
    op.create_index("ix_audit_logs_archived_created_at", "audit_logs", ["archived_at", "created_at"])

    op.create_table(
        "security_alerts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("vault_id", sa.String(36), sa.ForeignKey("vaults.id", ondelete="SET NULL"), nullable=True),
        sa.Column("count", sa.Integer(), nullable=False, server_default="1"),
        _ts("first_occurrence", nullable=False),
        _ts("last_occurrence", nullable=False),
        sa.Column("metadata", postgresql.JSONB(), nullable=False),
        sa.Column("acknowledged_by", sa.String(255), nullable=True),
        _ts("acknowledged_at"),
        sa.Column("resolved_by", sa.String(255), nullable=True),
        _ts("resolved_at"),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column(
            "triggering_audit_log_id",
            sa.String(36),
            sa.ForeignKey("audit_logs.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _ts("auto_resolve_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )
    op.create_index("ix_security_alerts_severity", "security_alerts", ["severity"])
    op.create_index("ix_security_alerts_status", "security_alerts", ["status"])
    op.create_index(
        "ix_security_alerts_type_status_created_at",
        "security_alerts",
        ["type", "status", "created_at"],
    )
    op.create_index("ix_security_alerts_auto_resolve", "security_alerts", ["status", "auto_resolve_at"])

    op.create_table(
        "compliance_reports",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("report_type", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("parameters", postgresql.JSONB(), nullable=False),
        sa.Column("summary", postgresql.JSONB(), nullable=True),
        sa.Column("file_path", sa.Text(), nullable=True),
        sa.Column("file_hash", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("generated_by", sa.String(255), nullable=True),
        _ts("started_at"),
        _ts("completed_at"),
        _ts("expires_at"),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_compliance_reports_report_type", "compliance_reports", ["report_type"])
    op.create_index("ix_compliance_reports_status", "compliance_reports", ["status"])

    op.create_table(
        "data_retention_policies",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("vault_id", sa.String(36), sa.ForeignKey("vaults.id", ondelete="CASCADE"), nullable=True),
        sa.Column("data_category", sa.String(32), nullable=False),
        sa.Column("retention_days", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_executed_at"),
        sa.Column("last_affected_rows", sa.Integer(), nullable=True),
        _ts("created_at", nullable=False),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("key_prefix", sa.String(16), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
        _ts("created_at", nullable=False),
        _ts("last_used_at"),
        _ts("expires_at"),
        _ts("revoked_at"),
    )
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_api_keys_user_id", table_name="api_keys")
    op.drop_table("api_keys")
    op.drop_table("data_retention_policies")
    op.drop_index("ix_compliance_reports_status", table_name="compliance_reports")
    op.drop_index("ix_compliance_reports_report_type", table_name="compliance_reports")
    op.drop_table("compliance_reports")
    op.drop_index("ix_security_alerts_auto_resolve", table_name="security_alerts")
    op.drop_index("ix_security_alerts_type_status_created_at", table_name="security_alerts")
    op.drop_index("ix_security_alerts_status", table_name="security_alerts")
    op.drop_index("ix_security_alerts_severity", table_name="security_alerts")
    op.drop_table("security_alerts")
    for name in (
        "ix_audit_logs_archived_created_at",
        "ix_audit_logs_result_created_at",
        "ix_audit_logs_user_operation_created_at",
        "ix_audit_logs_ip_created_at",
        "ix_audit_logs_created_at",
        "ix_audit_logs_risk_level",
        "ix_audit_logs_request_id",
        "ix_audit_logs_operation",
        "ix_audit_logs_token_id",
        "ix_audit_logs_vault_id",
    ):
        op.drop_index(name, table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("token_sequences")
    op.drop_index("uq_tokens_vault_hash_active", table_name="tokens")
    op.drop_index("ix_tokens_vault_created_at", table_name="tokens")
    op.drop_index("ix_tokens_status_expires_at", table_name="tokens")
    op.drop_index("ix_tokens_status", table_name="tokens")
    op.drop_index("ix_tokens_vault_id", table_name="tokens")
    op.drop_table("tokens")
    op.drop_index("uq_vault_keys_active", table_name="vault_keys")
    op.drop_index("ix_vault_keys_vault_id", table_name="vault_keys")
    op.drop_table("vault_keys")
    op.drop_index("ix_vaults_status", table_name="vaults")
    op.drop_table("vaults")
