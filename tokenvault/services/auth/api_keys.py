from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.domain.models import ApiKey


logger = logging.getLogger(__name__)

KEY_PREFIX = "tvk_"

ROLE_ORDER: dict[str, int] = {
    "reader": 1,
    "operator": 2,
    "admin": 3,
}


@dataclass(frozen=True)
class IssuedApiKey:
    # The raw key is only available at issue time.
    api_key: ApiKey
    raw_key: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_role(role: str) -> str:
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    # Key id is embedded so operators can trace a leaked secret to its row.
    resolved_id = key_id or uuid4().hex
    raw_key = f"{KEY_PREFIX}{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw_key, raw_key[:12], hash_api_key(raw_key)


async def create_api_key(
    session: AsyncSession,
    *,
    name: str,
    user_id: str,
    role: str,
    expires_in_days: int | None = None,
) -> IssuedApiKey:
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    api_key = ApiKey(
        id=key_id,
        name=name,
        user_id=user_id,
        role=normalize_role(role),
        key_prefix=key_prefix,
        key_hash=key_hash,
        expires_at=_utc_now() + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    session.add(api_key)
    await session.commit()
    logger.info("api_key_created key_id=%s user_id=%s role=%s", key_id, user_id, api_key.role)
    return IssuedApiKey(api_key=api_key, raw_key=raw_key)


async def authenticate_api_key(session: AsyncSession, raw_key: str, *, now: datetime | None = None) -> ApiKey | None:
    if not raw_key.startswith(KEY_PREFIX):
        return None
    now = now or _utc_now()
    api_key = (
        await session.execute(select(ApiKey).where(ApiKey.key_hash == hash_api_key(raw_key)))
    ).scalar_one_or_none()
    if api_key is None or api_key.revoked_at is not None:
        return None
    if api_key.expires_at is not None and api_key.expires_at <= now:
        return None
    api_key.last_used_at = now
    await session.commit()
    return api_key


async def revoke_api_key(session: AsyncSession, key_id: str) -> bool:
    api_key = await session.get(ApiKey, key_id)
    if api_key is None or api_key.revoked_at is not None:
        return False
    api_key.revoked_at = _utc_now()
    await session.commit()
    logger.info("api_key_revoked key_id=%s", key_id)
    return True
