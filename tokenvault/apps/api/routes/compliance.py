from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.apps.api.deps import Principal, get_db, require_role
from tokenvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenvault.apps.api.response import success_response
from tokenvault.domain.values import ReportType
from tokenvault.services import compliance


router = APIRouter(prefix="/compliance", tags=["compliance"], responses=DEFAULT_ERROR_RESPONSES)


class ReportRequest(BaseModel):
    report_type: ReportType
    start_date: datetime
    end_date: datetime
    vault_id: str | None = None


@router.post("/reports", status_code=202)
async def generate_report(
    request: Request,
    body: ReportRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    report = await compliance.create_compliance_report(
        db,
        report_type=body.report_type,
        start=body.start_date,
        end=body.end_date,
        vault_id=body.vault_id,
        generated_by=principal.user_id,
    )
    return success_response(request=request, data=compliance.report_view(report))


@router.get("/reports")
async def list_reports(
    request: Request,
    report_type: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    items = await compliance.list_reports(db, report_type=report_type, status=status, limit=limit, offset=offset)
    return success_response(request=request, data={"items": items, "count": len(items)})


@router.get("/reports/{report_id}")
async def get_report(
    request: Request,
    report_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    report = await compliance.get_report(db, report_id)
    return success_response(request=request, data=compliance.report_view(report))


@router.get("/reports/{report_id}/artifact")
async def get_report_artifact(
    request: Request,
    report_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    document = await compliance.read_report_artifact(db, report_id)
    return success_response(request=request, data=document)


@router.post("/reports/{report_id}/retry", status_code=202)
async def retry_report(
    request: Request,
    report_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    report = await compliance.retry_report(db, report_id)
    return success_response(request=request, data=compliance.report_view(report))


@router.get("/data")
async def compliance_data(
    request: Request,
    start: datetime = Query(...),
    end: datetime = Query(...),
    vault_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    data = await compliance.generate_compliance_data(db, start=start, end=end, vault_id=vault_id)
    return success_response(request=request, data=data)
