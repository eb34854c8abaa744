from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.apps.api.deps import Principal, get_db, require_role
from tokenvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenvault.apps.api.response import success_response
from tokenvault.services import security


router = APIRouter(prefix="/alerts", tags=["alerts"], responses=DEFAULT_ERROR_RESPONSES)


class AlertNotes(BaseModel):
    notes: str | None = None


class BulkAlertRequest(BaseModel):
    alert_ids: list[str] = Field(min_length=1, max_length=500)
    notes: str | None = None


@router.get("")
async def list_alerts(
    request: Request,
    status: str | None = Query(default=None),
    severity: str | None = Query(default=None),
    alert_type: str | None = Query(default=None, alias="type"),
    vault_id: str | None = Query(default=None),
    ip_address: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    items = await security.list_alerts(
        db,
        status=status,
        severity=severity,
        alert_type=alert_type,
        vault_id=vault_id,
        ip_address=ip_address,
        user_id=user_id,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data={"items": items, "count": len(items)})


@router.get("/statistics")
async def alert_statistics(
    request: Request,
    days: int = Query(default=7, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    return success_response(request=request, data=await security.get_alert_statistics(db, days=days))


@router.post("/bulk/acknowledge")
async def bulk_acknowledge(
    request: Request,
    body: BulkAlertRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    result = await security.bulk_acknowledge(db, body.alert_ids, user_id=principal.user_id, notes=body.notes)
    return success_response(request=request, data=result.as_dict())


@router.post("/bulk/resolve")
async def bulk_resolve(
    request: Request,
    body: BulkAlertRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    result = await security.bulk_resolve(db, body.alert_ids, user_id=principal.user_id, notes=body.notes)
    return success_response(request=request, data=result.as_dict())


@router.post("/{alert_id}/acknowledge")
async def acknowledge_alert(
    request: Request,
    alert_id: str,
    body: AlertNotes,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    alert = await security.acknowledge_alert(db, alert_id, user_id=principal.user_id, notes=body.notes)
    return success_response(request=request, data=security.alert_view(alert))


@router.post("/{alert_id}/resolve")
async def resolve_alert(
    request: Request,
    alert_id: str,
    body: AlertNotes,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    alert = await security.resolve_alert(db, alert_id, user_id=principal.user_id, notes=body.notes)
    return success_response(request=request, data=security.alert_view(alert))


@router.post("/{alert_id}/false-positive")
async def mark_false_positive(
    request: Request,
    alert_id: str,
    body: AlertNotes,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    alert = await security.mark_false_positive(db, alert_id, user_id=principal.user_id, notes=body.notes)
    return success_response(request=request, data=security.alert_view(alert))
