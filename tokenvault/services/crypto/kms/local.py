from __future__ import annotations

import hashlib
import hmac
import os
import time
from typing import Final
from uuid import uuid4

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tokenvault.core.config import get_settings
from tokenvault.core.errors import KeyManagementError
from tokenvault.services.crypto.utils import b64decode_str, b64encode_bytes, decode_key_material, ensure_32_bytes


class LocalKmsProvider:
    # Dev/test stand-in for an HSM/KMS; production deployments select a remote provider.
    provider: Final[str] = "local_kms"

    def __init__(self) -> None:
        self._master_key = _load_master_key()

    def build_key_ref(self, *, vault_id: str, key_version: int) -> str:
        return f"key_{uuid4()}_{int(time.time())}"

    def wrap_key(self, *, dek: bytes, key_ref: str) -> str:
        kek = _derive_kek(self._master_key, key_ref=key_ref)
        nonce = os.urandom(12)
        ciphertext = AESGCM(kek).encrypt(nonce, dek, key_ref.encode("utf-8"))
        return b64encode_bytes(nonce + ciphertext)

    def unwrap_key(self, *, wrapped_dek: str, key_ref: str) -> bytes:
        payload = b64decode_str(wrapped_dek)
        nonce, ciphertext = payload[:12], payload[12:]
        kek = _derive_kek(self._master_key, key_ref=key_ref)
        try:
            return AESGCM(kek).decrypt(nonce, ciphertext, key_ref.encode("utf-8"))
        except InvalidTag as exc:
            raise KeyManagementError("Vault key could not be unwrapped", context={"key_reference": key_ref}) from exc


def _load_master_key() -> bytes:
    settings = get_settings()
    if settings.crypto_local_master_key:
        return ensure_32_bytes(decode_key_material(settings.crypto_local_master_key))
    # No master key configured: fixed dev/test key derived from app_name.
    seed = f"{settings.app_name}-local-kms".encode("utf-8")
    return hashlib.sha256(seed).digest()


def _derive_kek(master_key: bytes, *, key_ref: str) -> bytes:
    # KEK = HMAC-SHA256(master_key, key_ref); never persisted.
    return hmac.new(master_key, key_ref.encode("utf-8"), hashlib.sha256).digest()
