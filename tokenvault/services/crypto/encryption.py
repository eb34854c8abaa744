from __future__ import annotations

import hashlib
import hmac
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from tokenvault.core.config import get_settings
from tokenvault.core.errors import EncryptionError, KeyManagementError
from tokenvault.domain.values import ENCRYPTION_ALGORITHMS, EncryptionConfig
from tokenvault.services.crypto.kms import get_kms_provider
from tokenvault.services.crypto.kms.base import KmsProvider
from tokenvault.services.crypto.utils import b64decode_str, b64encode_bytes, hmac_sha256_hex, sha256_hex


logger = logging.getLogger(__name__)

_BLOB_VERSION = "v1"
_ALGORITHM_TAGS: dict[str, str] = {
    "AES-256-GCM": "gcm",
    "AES-256-CBC": "cbc",
    "ChaCha20-Poly1305": "chacha",
}
_TAG_ALGORITHMS = {tag: name for name, tag in _ALGORITHM_TAGS.items()}
_CBC_MAC_SIZE = 32


def _derive_cbc_keys(key: bytes) -> tuple[bytes, bytes]:
    # CBC needs separate encryption and MAC keys (encrypt-then-MAC).
    material = HKDF(algorithm=hashes.SHA256(), length=64, salt=None, info=b"tokenvault-cbc-hmac").derive(key)
    return material[:32], material[32:]


class EncryptionService:
    def __init__(self, kms: KmsProvider | None = None) -> None:
        self._kms = kms or get_kms_provider()

    def resolve_key(self, config: EncryptionConfig) -> bytes:
        # Unwrap the vault data key through the KMS; the reference doubles as wrap AAD.
        if not config.wrapped_key:
            raise KeyManagementError(
                "Encryption config has no wrapped key",
                context={"key_reference": config.key_reference},
            )
        return self._kms.unwrap_key(wrapped_dek=config.wrapped_key, key_ref=config.key_reference)

    def encrypt(self, plaintext: str, config: EncryptionConfig) -> str:
        tag = _ALGORITHM_TAGS.get(config.algorithm)
        if tag is None:
            raise EncryptionError(
                f"Unsupported encryption algorithm: {config.algorithm}",
                code="UNSUPPORTED_ALGORITHM",
            )
        key = self.resolve_key(config)
        aad = config.key_reference.encode("utf-8")
        data = plaintext.encode("utf-8")
        try:
            if tag == "gcm":
                nonce = os.urandom(12)
                payload = nonce + AESGCM(key).encrypt(nonce, data, aad)
            elif tag == "chacha":
                nonce = os.urandom(12)
                payload = nonce + ChaCha20Poly1305(key).encrypt(nonce, data, aad)
            else:
                enc_key, mac_key = _derive_cbc_keys(key)
                iv = os.urandom(16)
                padder = padding.PKCS7(128).padder()
                padded = padder.update(data) + padder.finalize()
                encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
                body = iv + encryptor.update(padded) + encryptor.finalize()
                payload = body + hmac.new(mac_key, aad + body, hashlib.sha256).digest()
        except (ValueError, TypeError) as exc:
            raise EncryptionError("Encryption failed", code="ENCRYPTION_FAILED") from exc
        return f"{_BLOB_VERSION}:{tag}:{b64encode_bytes(payload)}"

    def decrypt(self, blob: str, config: EncryptionConfig) -> str:
        try:
            version, tag, encoded = blob.split(":", 2)
            payload = b64decode_str(encoded)
        except ValueError as exc:
            raise EncryptionError("Malformed ciphertext", code="DECRYPTION_FAILED") from exc
        if version != _BLOB_VERSION or tag not in _TAG_ALGORITHMS:
            raise EncryptionError("Unknown ciphertext format", code="UNSUPPORTED_ALGORITHM")
        if _TAG_ALGORITHMS[tag] != config.algorithm:
            raise EncryptionError("Ciphertext algorithm does not match vault configuration", code="DECRYPTION_FAILED")
        key = self.resolve_key(config)
        aad = config.key_reference.encode("utf-8")
        try:
            if tag == "gcm":
                data = AESGCM(key).decrypt(payload[:12], payload[12:], aad)
            elif tag == "chacha":
                data = ChaCha20Poly1305(key).decrypt(payload[:12], payload[12:], aad)
            else:
                enc_key, mac_key = _derive_cbc_keys(key)
                body, mac = payload[:-_CBC_MAC_SIZE], payload[-_CBC_MAC_SIZE:]
                expected = hmac.new(mac_key, aad + body, hashlib.sha256).digest()
                if not hmac.compare_digest(mac, expected):
                    raise InvalidTag()
                decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(body[:16])).decryptor()
                padded = decryptor.update(body[16:]) + decryptor.finalize()
                unpadder = padding.PKCS7(128).unpadder()
                data = unpadder.update(padded) + unpadder.finalize()
        except (InvalidTag, ValueError) as exc:
            # Never include ciphertext or key material in the error.
            logger.warning("decrypt_failed algorithm=%s key_reference=%s", config.algorithm, config.key_reference)
            raise EncryptionError("Decryption failed or data was tampered with", code="DECRYPTION_FAILED") from exc
        return data.decode("utf-8")


def hash_data(plaintext: str) -> str:
    # Dedup/integrity key only; not a lookup secret.
    return sha256_hex(plaintext.encode("utf-8"))


def compute_checksum(token_value: str, data_hash: str) -> str:
    settings = get_settings()
    message = f"{token_value}:{data_hash}".encode("utf-8")
    return hmac_sha256_hex(settings.token_checksum_secret.encode("utf-8"), message)


def verify_checksum(token_value: str, data_hash: str, checksum: str) -> bool:
    return hmac.compare_digest(compute_checksum(token_value, data_hash), checksum)


def generate_data_key() -> bytes:
    return AESGCM.generate_key(bit_length=256)


def is_supported_algorithm(algorithm: str) -> bool:
    return algorithm in ENCRYPTION_ALGORITHMS


_service: EncryptionService | None = None


def get_encryption_service() -> EncryptionService:
    # Providers read settings at construction; tests reset with reset_encryption_service().
    global _service
    if _service is None:
        _service = EncryptionService()
    return _service


def reset_encryption_service() -> None:
    global _service
    _service = None
