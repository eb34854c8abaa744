from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from tokenvault.core.config import get_settings


_redis_pool: ArqRedis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def queue_key(queue_name: str) -> str:
    # arq stores pending jobs in a sorted set under this key.
    return f"arq:queue:{queue_name}"


async def get_redis_pool() -> ArqRedis:
    # One pool per event loop.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Pool was created on another loop.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.audit_queue_default,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth(queue_name: str) -> int | None:
    # None signals Redis unavailability to health checks.
    try:
        redis = await get_redis_pool()
        return int(await redis.zcard(queue_key(queue_name)))
    except Exception:  # noqa: BLE001 - health endpoints report degraded Redis
        return None


def heartbeat_key(queue_name: str) -> str:
    return f"tokenvault:worker:heartbeat:{queue_name}"


async def set_worker_heartbeat(queue_name: str, *, timestamp: datetime | None = None) -> None:
    redis = await get_redis_pool()
    await redis.set(heartbeat_key(queue_name), (timestamp or datetime.now(timezone.utc)).isoformat())


async def get_worker_heartbeat(queue_name: str) -> datetime | None:
    # None when the heartbeat is missing or Redis is unavailable.
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(heartbeat_key(queue_name))
    except Exception:  # noqa: BLE001 - health endpoints report degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
