from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.apps.api.response import get_request_id
from tokenvault.core.config import get_settings
from tokenvault.domain.values import RequestContext
from tokenvault.persistence.db import get_session
from tokenvault.services.auth.api_keys import authenticate_api_key, normalize_role, role_allows
from tokenvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    user_id: str
    role: str
    api_key_id: str | None = None
    auth_method: str = "api_key"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Header identity is only honored when AUTH_DEV_BYPASS is set.
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise _auth_error("X-User-Id header is required in dev bypass mode")
    try:
        role = normalize_role(request.headers.get("X-Role", "admin"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(user_id=user_id, role=role, api_key_id=None, auth_method="dev_bypass")


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    if not bearer_token or not settings.auth_enabled:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        increment_counter("auth_failures_total")
        if not settings.auth_enabled:
            raise _auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")
        raise _auth_error("Missing API key")

    api_key = await authenticate_api_key(db, bearer_token)
    if api_key is None:
        increment_counter("auth_failures_total")
        logger.warning("api_key_rejected request_id=%s", get_request_id(request))
        raise _auth_error("Invalid or expired API key")
    return Principal(user_id=api_key.user_id, role=api_key.role, api_key_id=api_key.id)


def require_role(minimum_role: str):
    # Dependency factory enforcing least privilege at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.info(
                "rbac_forbidden user_id=%s role=%s required=%s",
                principal.user_id,
                principal.role,
                minimum_role,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def request_context(request: Request, principal: Principal) -> RequestContext:
    return RequestContext(
        user_id=principal.user_id,
        api_key_id=principal.api_key_id,
        session_id=request.headers.get("X-Session-Id"),
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        request_id=get_request_id(request),
    )
