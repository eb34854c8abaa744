from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.errors import KeyManagementError
from tokenvault.domain.models import Vault, VaultKey
from tokenvault.domain.values import EncryptionConfig
from tokenvault.persistence.repos import vaults as vaults_repo
from tokenvault.services.crypto.encryption import generate_data_key
from tokenvault.services.crypto.kms import get_kms_provider
from tokenvault.services.crypto.utils import sha256_hex


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_vault_key(vault_id: str, *, key_version: int, now: datetime | None = None) -> VaultKey:
    # Mint a fresh data key and keep only its KMS-wrapped form.
    kms = get_kms_provider()
    key_ref = kms.build_key_ref(vault_id=vault_id, key_version=key_version)
    dek = generate_data_key()
    return VaultKey(
        vault_id=vault_id,
        key_version=key_version,
        key_reference=key_ref,
        provider=kms.provider,
        encrypted_key=kms.wrap_key(dek=dek, key_ref=key_ref),
        key_hash=sha256_hex(dek),
        status="active",
        activated_at=now or _utc_now(),
    )


def encryption_config_for(vault: Vault, key: VaultKey) -> EncryptionConfig:
    if key.status == "compromised":
        raise KeyManagementError(
            "Vault key is compromised",
            context={"vault_id": vault.id, "key_version": key.key_version},
        )
    return EncryptionConfig(
        algorithm=vault.encryption_algorithm,
        key_reference=key.key_reference,
        wrapped_key=key.encrypted_key,
    )


async def require_active_key(session: AsyncSession, vault: Vault) -> VaultKey:
    key = await vaults_repo.get_active_key(session, vault.id)
    if key is None:
        raise KeyManagementError("Vault has no active encryption key", context={"vault_id": vault.id})
    return key


async def require_key_version(session: AsyncSession, vault: Vault, key_version: int) -> VaultKey:
    key = await vaults_repo.get_key_by_version(session, vault.id, key_version)
    if key is None:
        raise KeyManagementError(
            "Vault key version not found",
            context={"vault_id": vault.id, "key_version": key_version},
        )
    return key


async def rotate_vault_key(
    session: AsyncSession, vault: Vault, *, now: datetime | None = None
) -> tuple[VaultKey | None, VaultKey]:
    # Caller holds the vault lock and commits; retire + activate land in one transaction.
    current = now or _utc_now()
    previous = await vaults_repo.get_active_key(session, vault.id)
    keys = await vaults_repo.list_keys(session, vault.id)
    next_version = max((key.key_version for key in keys), default=0) + 1
    if previous is not None:
        previous.status = "retired"
        previous.retired_at = current
        # Flush the retirement first so the one-active-key index never sees two rows.
        await session.flush()
    new_key = build_vault_key(vault.id, key_version=next_version, now=current)
    session.add(new_key)
    vault.encryption_key_reference = new_key.key_reference
    vault.last_key_rotation = current
    await session.flush()
    logger.info(
        "vault_key_rotated vault_id=%s previous_version=%s key_version=%s",
        vault.id,
        previous.key_version if previous else None,
        next_version,
    )
    return previous, new_key
