from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.apps.api.deps import get_db
from tokenvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenvault.apps.api.response import SuccessEnvelope, success_response
from tokenvault.core.config import get_settings
from tokenvault.services.queueing import get_queue_depth, get_worker_heartbeat


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class QueueHealth(BaseModel):
    name: str
    depth: int | None = None
    last_heartbeat: str | None = None


class HealthResponse(BaseModel):
    status: str
    database: str
    queues: list[QueueHealth] = []


async def _queue_health(name: str) -> QueueHealth:
    heartbeat = await get_worker_heartbeat(name)
    return QueueHealth(
        name=name,
        depth=await get_queue_depth(name),
        last_heartbeat=heartbeat.isoformat() if heartbeat else None,
    )


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    settings = get_settings()
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        logger.warning("health_database_unavailable", exc_info=exc)
        database = "unavailable"

    queues: list[QueueHealth] = []
    if settings.audit_execution_mode.lower() != "inline":
        for name in (settings.audit_queue_critical, settings.audit_queue_high, settings.audit_queue_default):
            queues.append(await _queue_health(name))
    if settings.compliance_execution_mode.lower() != "inline":
        queues.append(await _queue_health(settings.compliance_queue_name))

    degraded = database != "ok" or any(queue.depth is None for queue in queues)
    payload = HealthResponse(status="degraded" if degraded else "ok", database=database, queues=queues)
    return success_response(request=request, data=payload.model_dump())
