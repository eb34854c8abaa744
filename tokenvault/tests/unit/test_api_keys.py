from __future__ import annotations

import pytest

from tokenvault.services.auth.api_keys import (
    KEY_PREFIX,
    generate_api_key,
    hash_api_key,
    normalize_role,
    role_allows,
)


def test_generate_api_key_embeds_id_and_hashes() -> None:
    key_id, raw_key, key_prefix, key_hash = generate_api_key(key_id="abc123")
    assert key_id == "abc123"
    assert raw_key.startswith(f"{KEY_PREFIX}abc123_")
    assert key_prefix == raw_key[:12]
    assert key_hash == hash_api_key(raw_key)
    assert raw_key not in key_hash


def test_generated_keys_are_unique() -> None:
    assert generate_api_key()[1] != generate_api_key()[1]


def test_role_hierarchy() -> None:
    assert role_allows(role="admin", minimum_role="operator")
    assert role_allows(role="operator", minimum_role="reader")
    assert not role_allows(role="reader", minimum_role="operator")
    assert not role_allows(role="unknown", minimum_role="reader")


def test_normalize_role() -> None:
    assert normalize_role(" Admin ") == "admin"
    with pytest.raises(ValueError):
        normalize_role("superuser")
