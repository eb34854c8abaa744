from __future__ import annotations

import asyncio
import hashlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from weakref import WeakValueDictionary

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.persistence.db import dialect_name


_local_locks: WeakValueDictionary[str, asyncio.Lock] = WeakValueDictionary()


def _advisory_key(key: str) -> int:
    # Fold the key into a signed 64-bit integer for pg_advisory_xact_lock.
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _local_lock(key: str) -> asyncio.Lock:
    lock = _local_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _local_locks[key] = lock
    return lock


@asynccontextmanager
async def transaction_lock(session: AsyncSession, key: str) -> AsyncIterator[None]:
    # Serialize writers per key until the caller's transaction ends.
    # Postgres releases the advisory lock at commit/rollback, so commit inside the block.
    if dialect_name(session) == "postgresql":
        await session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": _advisory_key(key)})
        yield
        return
    # Other dialects (SQLite in tests) serialize within the process.
    lock = _local_lock(key)
    async with lock:
        yield
