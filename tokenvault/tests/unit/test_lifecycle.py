from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tokenvault.core.errors import (
    InvalidVaultTransitionError,
    TokenizationError,
    TokenNotRevocableError,
    TokenNotUsableError,
)
from tokenvault.domain import lifecycle
from tokenvault.domain.models import Token, Vault


NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _token(**overrides) -> Token:
    fields = {
        "id": "tok-1",
        "vault_id": "vault-1",
        "token_value": "tok_abcdefgh1234",
        "token_type": "random",
        "metadata_json": {"source": "test"},
        "expires_at": None,
        "key_version": 1,
        "status": "active",
        "encrypted_data": "v1:gcm:AAAA",
        "data_hash": "0" * 64,
        "checksum": "0" * 64,
        "usage_count": 0,
        "created_at": NOW,
    }
    fields.update(overrides)
    return Token(**fields)


def _vault(**overrides) -> Vault:
    fields = {
        "id": "vault-1",
        "name": "cards",
        "data_type": "card",
        "status": "active",
        "encryption_algorithm": "AES-256-GCM",
        "encryption_key_reference": "key_1",
        "max_tokens": 2,
        "current_token_count": 0,
        "allowed_operations": ["tokenize", "detokenize"],
        "retention_days": 30,
        "key_rotation_interval_days": 90,
        "last_key_rotation": NOW,
        "created_at": NOW,
    }
    fields.update(overrides)
    return Vault(**fields)


def test_usability_respects_status_and_expiry() -> None:
    assert lifecycle.is_usable(_token(), now=NOW)
    assert not lifecycle.is_usable(_token(status="revoked"), now=NOW)
    assert not lifecycle.is_usable(_token(expires_at=NOW), now=NOW)
    assert lifecycle.is_usable(_token(expires_at=NOW + timedelta(seconds=1)), now=NOW)


def test_will_expire_within_window() -> None:
    assert lifecycle.will_expire_within(_token(expires_at=NOW + timedelta(hours=2)), 24, now=NOW)
    assert not lifecycle.will_expire_within(_token(expires_at=NOW + timedelta(hours=30)), 24, now=NOW)
    assert not lifecycle.will_expire_within(_token(expires_at=NOW - timedelta(hours=1)), 24, now=NOW)
    assert not lifecycle.will_expire_within(_token(), 24, now=NOW)


def test_record_usage_increments_and_rejects_unusable() -> None:
    token = _token()
    event = lifecycle.record_usage(token, now=NOW)
    assert token.usage_count == 1
    assert token.last_used_at == NOW
    assert event.usage_count == 1
    with pytest.raises(TokenNotUsableError):
        lifecycle.record_usage(_token(status="expired"), now=NOW)


def test_revoke_records_trail_once() -> None:
    token = _token()
    event = lifecycle.revoke(token, reason="customer request", now=NOW)
    assert token.status == "revoked"
    assert token.metadata_json["revocation"]["reason"] == "customer request"
    assert token.metadata_json["source"] == "test"
    assert event.to_payload()["event"] == "token.revoked"
    with pytest.raises(TokenNotRevocableError):
        lifecycle.revoke(token, now=NOW)


def test_extend_expiration_requires_later_time() -> None:
    token = _token(expires_at=NOW + timedelta(days=1))
    with pytest.raises(TokenizationError):
        lifecycle.extend_expiration(token, expires_at=NOW + timedelta(hours=1), now=NOW)
    lifecycle.extend_expiration(token, expires_at=NOW + timedelta(days=10), now=NOW)
    assert token.expires_at == NOW + timedelta(days=10)
    history = token.metadata_json["expiration_extensions"]
    assert len(history) == 1
    assert history[0]["previous_expires_at"] == (NOW + timedelta(days=1)).isoformat()


def test_update_metadata_blocks_reserved_keys() -> None:
    token = _token()
    with pytest.raises(TokenizationError) as excinfo:
        lifecycle.update_metadata(token, {"revocation": "x"}, now=NOW)
    assert excinfo.value.code == "RESERVED_METADATA_KEY"
    event = lifecycle.update_metadata(token, {"customer": "c-1"}, now=NOW)
    assert token.metadata_json == {"source": "test", "customer": "c-1"}
    assert event.keys == ("customer",)


def test_mark_compromised_sets_status() -> None:
    token = _token()
    event = lifecycle.mark_compromised(token, reason="checksum_mismatch", now=NOW)
    assert token.status == "compromised"
    assert event.reason == "checksum_mismatch"


def test_vault_transitions() -> None:
    vault = _vault()
    event = lifecycle.change_status(vault, "inactive", now=NOW)
    assert (event.previous_status, event.status, event.transition) == ("active", "inactive", "deactivation")
    lifecycle.change_status(vault, "active", now=NOW)
    with pytest.raises(InvalidVaultTransitionError):
        lifecycle.change_status(vault, "active", now=NOW)
    archived = lifecycle.change_status(vault, "archived", now=NOW)
    assert archived.transition == "archiving"
    assert vault.archived_at == NOW
    with pytest.raises(InvalidVaultTransitionError):
        lifecycle.change_status(vault, "inactive", now=NOW)


def test_capacity_remaining() -> None:
    assert lifecycle.capacity_remaining(_vault(max_tokens=2, current_token_count=1)) == 1
    assert lifecycle.capacity_remaining(_vault(max_tokens=2, current_token_count=5)) == 0


def test_key_rotation_due() -> None:
    vault = _vault(key_rotation_interval_days=90, last_key_rotation=NOW)
    assert not lifecycle.needs_key_rotation(vault, now=NOW + timedelta(days=89))
    assert lifecycle.needs_key_rotation(vault, now=NOW + timedelta(days=90))
    assert lifecycle.needs_key_rotation(_vault(last_key_rotation=None), now=NOW)


def test_operation_allowed() -> None:
    vault = _vault(allowed_operations=["tokenize"])
    assert lifecycle.is_operation_allowed(vault, "tokenize")
    assert not lifecycle.is_operation_allowed(vault, "detokenize")
