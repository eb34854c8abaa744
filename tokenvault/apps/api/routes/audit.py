from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.apps.api.deps import Principal, get_db, request_context, require_role
from tokenvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenvault.apps.api.response import success_response
from tokenvault.domain.values import AuditResult, RiskLevel
from tokenvault.services import audit


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class ManualAuditEntry(BaseModel):
    operation: Literal["manual_entry"] = "manual_entry"
    result: AuditResult = "success"
    vault_id: str | None = None
    token_id: str | None = None
    message: str | None = None
    metadata: dict[str, Any] | None = None
    risk_level: RiskLevel | None = None


@router.post("/logs", status_code=202)
async def create_audit_entry(
    request: Request,
    body: ManualAuditEntry,
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    metadata = dict(body.metadata or {})
    if body.message:
        metadata["message"] = body.message
    audit_id = await audit.log_event(
        operation=body.operation,
        result=body.result,
        context=request_context(request, principal),
        vault_id=body.vault_id,
        token_id=body.token_id,
        error_message=body.message if body.result == "failure" else None,
        request_metadata=metadata or None,
        risk_level=body.risk_level,
    )
    return success_response(request=request, data={"audit_id": audit_id})


@router.get("/logs")
async def list_audit_logs(
    request: Request,
    vault_id: str | None = Query(default=None),
    token_id: str | None = Query(default=None),
    operation: str | None = Query(default=None),
    result: str | None = Query(default=None),
    risk_level: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    ip_address: str | None = Query(default=None),
    created_from: datetime | None = Query(default=None),
    created_to: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    items = await audit.list_audit_logs(
        db,
        vault_id=vault_id,
        token_id=token_id,
        operation=operation,
        result=result,
        risk_level=risk_level,
        user_id=user_id,
        ip_address=ip_address,
        created_from=created_from,
        created_to=created_to,
        limit=limit,
        offset=offset,
    )
    return success_response(request=request, data={"items": items, "count": len(items)})


@router.get("/summary")
async def audit_summary(
    request: Request,
    start: datetime = Query(...),
    end: datetime = Query(...),
    vault_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    summary = await audit.get_audit_summary(db, start=start, end=end, vault_id=vault_id)
    return success_response(request=request, data=summary)


@router.get("/statistics")
async def audit_statistics(
    request: Request,
    hours: int = Query(default=24, ge=1, le=24 * 31),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    stats = await audit.get_audit_statistics(db, hours=hours)
    return success_response(request=request, data=stats)


@router.get("/export")
async def export_audit_logs(
    request: Request,
    start: datetime = Query(...),
    end: datetime = Query(...),
    vault_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    records = await audit.export_for_compliance(db, start=start, end=end, vault_id=vault_id)
    return success_response(request=request, data={"items": records, "count": len(records)})
