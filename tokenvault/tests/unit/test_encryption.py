from __future__ import annotations

import pytest

from tokenvault.core.errors import EncryptionError, KeyManagementError
from tokenvault.domain.values import ENCRYPTION_ALGORITHMS, EncryptionConfig
from tokenvault.services.crypto.encryption import (
    EncryptionService,
    compute_checksum,
    generate_data_key,
    hash_data,
    verify_checksum,
)
from tokenvault.services.crypto.kms.local import LocalKmsProvider


def _config(provider: LocalKmsProvider, algorithm: str) -> EncryptionConfig:
    key_ref = provider.build_key_ref(vault_id="vault-1", key_version=1)
    wrapped = provider.wrap_key(dek=generate_data_key(), key_ref=key_ref)
    return EncryptionConfig(algorithm=algorithm, key_reference=key_ref, wrapped_key=wrapped)


@pytest.mark.parametrize("algorithm", ENCRYPTION_ALGORITHMS)
def test_roundtrip_per_algorithm(algorithm: str) -> None:
    provider = LocalKmsProvider()
    service = EncryptionService(kms=provider)
    config = _config(provider, algorithm)
    blob = service.encrypt("4111111111111111", config)
    assert "4111111111111111" not in blob
    assert blob.startswith("v1:")
    assert service.decrypt(blob, config) == "4111111111111111"


def test_ciphertext_is_randomized() -> None:
    provider = LocalKmsProvider()
    service = EncryptionService(kms=provider)
    config = _config(provider, "AES-256-GCM")
    assert service.encrypt("same", config) != service.encrypt("same", config)


@pytest.mark.parametrize("algorithm", ENCRYPTION_ALGORITHMS)
def test_tampered_ciphertext_is_rejected(algorithm: str) -> None:
    provider = LocalKmsProvider()
    service = EncryptionService(kms=provider)
    config = _config(provider, algorithm)
    version, tag, encoded = service.encrypt("secret-value", config).split(":", 2)
    flipped = ("A" if encoded[10] != "A" else "B")
    tampered = f"{version}:{tag}:{encoded[:10]}{flipped}{encoded[11:]}"
    with pytest.raises(EncryptionError):
        service.decrypt(tampered, config)


def test_algorithm_mismatch_is_rejected() -> None:
    provider = LocalKmsProvider()
    service = EncryptionService(kms=provider)
    config = _config(provider, "AES-256-GCM")
    blob = service.encrypt("value", config)
    other = EncryptionConfig(
        algorithm="ChaCha20-Poly1305",
        key_reference=config.key_reference,
        wrapped_key=config.wrapped_key,
    )
    with pytest.raises(EncryptionError):
        service.decrypt(blob, other)


def test_unsupported_algorithm() -> None:
    provider = LocalKmsProvider()
    service = EncryptionService(kms=provider)
    config = _config(provider, "AES-256-GCM")
    with pytest.raises(EncryptionError) as excinfo:
        service.encrypt("value", EncryptionConfig("DES", config.key_reference, config.wrapped_key))
    assert excinfo.value.code == "UNSUPPORTED_ALGORITHM"


def test_wrapped_key_bound_to_reference() -> None:
    provider = LocalKmsProvider()
    config = _config(provider, "AES-256-GCM")
    with pytest.raises(KeyManagementError):
        provider.unwrap_key(wrapped_dek=config.wrapped_key, key_ref="key_other")


def test_missing_wrapped_key() -> None:
    service = EncryptionService(kms=LocalKmsProvider())
    with pytest.raises(KeyManagementError):
        service.encrypt("value", EncryptionConfig("AES-256-GCM", "key_ref", None))


def test_checksum_binds_token_to_hash() -> None:
    data_hash = hash_data("4111111111111111")
    assert data_hash == hash_data("4111111111111111")
    checksum = compute_checksum("tok_value_1", data_hash)
    assert verify_checksum("tok_value_1", data_hash, checksum)
    assert not verify_checksum("tok_value_2", data_hash, checksum)
    assert not verify_checksum("tok_value_1", hash_data("other"), checksum)
