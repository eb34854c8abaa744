from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.apps.api.deps import Principal, get_db, request_context, require_role
from tokenvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tokenvault.apps.api.response import success_response
from tokenvault.domain.values import TokenType
from tokenvault.services import tokenization


router = APIRouter(prefix="/tokens", tags=["tokens"], responses=DEFAULT_ERROR_RESPONSES)


class TokenizeRequest(BaseModel):
    vault_id: str
    data: str = Field(min_length=1)
    token_type: TokenType = "random"
    metadata: dict[str, Any] | None = None
    expires_at: datetime | None = None


class DetokenizeRequest(BaseModel):
    token: str = Field(min_length=1)


class BulkTokenizeRequest(BaseModel):
    vault_id: str
    data: list[str]
    token_type: TokenType = "random"
    metadata: dict[str, Any] | None = None
    expires_at: datetime | None = None


class BulkDetokenizeRequest(BaseModel):
    tokens: list[str]


class SearchRequest(BaseModel):
    vault_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    token_type: TokenType | None = None
    status: str | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int = Field(default=100, ge=1)


class RevokeRequest(BaseModel):
    reason: str | None = None


class ExtendExpirationRequest(BaseModel):
    expires_at: datetime


class MetadataPatchRequest(BaseModel):
    metadata: dict[str, Any]


@router.post("/tokenize", status_code=201)
async def tokenize(
    request: Request,
    body: TokenizeRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    token = await tokenization.tokenize(
        db,
        vault_id=body.vault_id,
        plaintext=body.data,
        token_type=body.token_type,
        metadata=body.metadata,
        expires_at=body.expires_at,
        context=request_context(request, principal),
    )
    return success_response(request=request, data=tokenization.token_projection(token))


@router.post("/detokenize")
async def detokenize(
    request: Request,
    body: DetokenizeRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    plaintext = await tokenization.detokenize(
        db,
        token_value=body.token,
        context=request_context(request, principal),
    )
    return success_response(request=request, data={"token": body.token, "data": plaintext})


@router.post("/bulk/tokenize")
async def bulk_tokenize(
    request: Request,
    body: BulkTokenizeRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    result = await tokenization.bulk_tokenize(
        db,
        vault_id=body.vault_id,
        items=body.data,
        token_type=body.token_type,
        common_metadata=body.metadata,
        expires_at=body.expires_at,
        context=request_context(request, principal),
    )
    return success_response(
        request=request,
        data={
            "batch_id": result.batch_id,
            "result": result.result,
            "summary": result.summary,
            "items": [item.as_dict() for item in result.items],
        },
    )


@router.post("/bulk/detokenize")
async def bulk_detokenize(
    request: Request,
    body: BulkDetokenizeRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    result = await tokenization.bulk_detokenize(
        db,
        token_values=body.tokens,
        context=request_context(request, principal),
    )
    return success_response(
        request=request,
        data={
            "result": result.result,
            "summary": result.summary,
            "items": [item.as_dict() for item in result.items],
        },
    )


@router.post("/search")
async def search_tokens(
    request: Request,
    body: SearchRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    criteria = tokenization.SearchCriteria(
        metadata=body.metadata,
        token_type=body.token_type,
        status=body.status,
        created_after=body.created_after,
        created_before=body.created_before,
    )
    tokens = await tokenization.search(
        db,
        vault_id=body.vault_id,
        criteria=criteria,
        limit=body.limit,
        context=request_context(request, principal),
    )
    return success_response(request=request, data={"items": tokens, "count": len(tokens)})


@router.get("/statistics")
async def token_statistics(
    request: Request,
    vault_id: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    stats = await tokenization.get_token_statistics(db, vault_id=vault_id)
    return success_response(request=request, data=stats)


@router.get("/{token_id}")
async def get_token(
    request: Request,
    token_id: str,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("reader")),
) -> dict:
    token = await tokenization.get_token(db, token_id)
    return success_response(request=request, data=tokenization.token_projection(token))


@router.post("/{token_id}/revoke")
async def revoke_token(
    request: Request,
    token_id: str,
    body: RevokeRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    token = await tokenization.revoke_token(
        db,
        token_id=token_id,
        reason=body.reason,
        context=request_context(request, principal),
    )
    return success_response(request=request, data=tokenization.token_projection(token))


@router.post("/{token_id}/extend")
async def extend_token_expiration(
    request: Request,
    token_id: str,
    body: ExtendExpirationRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    token = await tokenization.extend_expiration(
        db,
        token_id=token_id,
        expires_at=body.expires_at,
        context=request_context(request, principal),
    )
    return success_response(request=request, data=tokenization.token_projection(token))


@router.patch("/{token_id}/metadata")
async def update_token_metadata(
    request: Request,
    token_id: str,
    body: MetadataPatchRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_role("operator")),
) -> dict:
    token = await tokenization.update_metadata(
        db,
        token_id=token_id,
        patch=body.metadata,
        context=request_context(request, principal),
    )
    return success_response(request=request, data=tokenization.token_projection(token))
