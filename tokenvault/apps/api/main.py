from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from tokenvault.apps.api.errors import (
    http_exception_handler,
    tokenvault_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tokenvault.apps.api.response import API_VERSION
from tokenvault.apps.api.routes.alerts import router as alerts_router
from tokenvault.apps.api.routes.audit import router as audit_router
from tokenvault.apps.api.routes.compliance import router as compliance_router
from tokenvault.apps.api.routes.health import router as health_router
from tokenvault.apps.api.routes.tokens import router as tokens_router
from tokenvault.apps.api.routes.vaults import router as vaults_router
from tokenvault.core.errors import TokenVaultError
from tokenvault.core.logging import configure_logging
from tokenvault.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="TokenVault API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_responses_{response.status_code // 100}xx_total")
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(TokenVaultError, tokenvault_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in (health_router, tokens_router, vaults_router, audit_router, alerts_router, compliance_router):
        app.include_router(router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Bearer auth applies to every route except health.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="TokenVault API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health":
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
