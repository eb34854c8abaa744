from __future__ import annotations

from uuid import uuid4

from tokenvault.persistence.db import SessionLocal
from tokenvault.services.auth.api_keys import create_api_key


async def create_test_api_key(
    *,
    role: str,
    user_id: str | None = None,
    name: str = "test-key",
    expires_in_days: int | None = None,
) -> tuple[str, dict[str, str], str, str]:
    # Provision an API key and return (raw_key, headers, user_id, key_id) for integration tests.
    resolved_user = user_id or f"user-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        issued = await create_api_key(
            session,
            name=name,
            user_id=resolved_user,
            role=role,
            expires_in_days=expires_in_days,
        )
    headers = {"Authorization": f"Bearer {issued.raw_key}"}
    return issued.raw_key, headers, resolved_user, issued.api_key.id
