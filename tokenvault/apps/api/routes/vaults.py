from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.apps.api.deps import Principal, get_db, request_context, require_role
from tokenvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenvault.apps.api.response import success_response
from tokenvault.domain.values import DataType
from tokenvault.services import vaults


router = APIRouter(prefix="/vaults", tags=["vaults"], responses=DEFAULT_ERROR_RESPONSES)


class CreateVaultRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    data_type: DataType
    description: str | None = None
    encryption_algorithm: str | None = None
    allowed_operations: list[str] | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    retention_days: int | None = Field(default=None, ge=30, le=3650)
    key_rotation_interval_days: int | None = Field(default=None, gt=0)
    access_restrictions: dict[str, Any] | None = None


class UpdateVaultRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    allowed_operations: list[str] | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    retention_days: int | None = Field(default=None, ge=30, le=3650)
    key_rotation_interval_days: int | None = Field(default=None, gt=0)
    access_restrictions: dict[str, Any] | None = None


@router.post("", status_code=201)
async def create_vault(
    request: Request,
    body: CreateVaultRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    vault = await vaults.create_vault(db, **body.model_dump(), context=request_context(request, principal))
    return success_response(request=request, data=vaults.vault_view(vault))


@router.get("")
async def list_vaults(
    request: Request,
    status: str | None = Query(default=None),
    data_type: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    items = await vaults.list_vaults(db, status=status, data_type=data_type, limit=limit, offset=offset)
    return success_response(request=request, data={"items": items, "count": len(items)})


@router.get("/rotation-due")
async def vaults_needing_rotation(
    request: Request,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    items = [vaults.vault_view(vault) for vault in await vaults.list_vaults_needing_rotation(db)]
    return success_response(request=request, data={"items": items, "count": len(items)})


@router.get("/{vault_id}")
async def get_vault(
    request: Request,
    vault_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    vault = await vaults.get_vault(db, vault_id)
    return success_response(request=request, data=vaults.vault_view(vault))


@router.patch("/{vault_id}")
async def update_vault(
    request: Request,
    vault_id: str,
    body: UpdateVaultRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    vault = await vaults.update_vault(
        db,
        vault_id,
        body.model_dump(exclude_unset=True),
        context=request_context(request, principal),
    )
    return success_response(request=request, data=vaults.vault_view(vault))


@router.post("/{vault_id}/activate")
async def activate_vault(
    request: Request,
    vault_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    vault = await vaults.activate_vault(db, vault_id, context=request_context(request, principal))
    return success_response(request=request, data=vaults.vault_view(vault))


@router.post("/{vault_id}/deactivate")
async def deactivate_vault(
    request: Request,
    vault_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    vault = await vaults.deactivate_vault(db, vault_id, context=request_context(request, principal))
    return success_response(request=request, data=vaults.vault_view(vault))


@router.post("/{vault_id}/archive")
async def archive_vault(
    request: Request,
    vault_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    vault = await vaults.archive_vault(db, vault_id, context=request_context(request, principal))
    return success_response(request=request, data=vaults.vault_view(vault))


@router.post("/{vault_id}/rotate-key")
async def rotate_vault_key(
    request: Request,
    vault_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    vault = await vaults.rotate_key(db, vault_id, context=request_context(request, principal))
    return success_response(request=request, data=vaults.vault_view(vault))


@router.get("/{vault_id}/statistics")
async def vault_statistics(
    request: Request,
    vault_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    stats = await vaults.get_vault_statistics(db, vault_id)
    return success_response(request=request, data=stats)
