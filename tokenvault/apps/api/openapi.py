from __future__ import annotations

from typing import Any

from tokenvault.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", "TOKENIZATION_ERROR", "Unsupported token type"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    403: _response(
        "Forbidden",
        "OPERATION_NOT_ALLOWED",
        "Operation not allowed for vault",
        details={"vault_id": "3f0c7d2e-5b0a-4f0e-9d53-4b1f2a9c8e11", "operation": "detokenize"},
    ),
    404: _response("Not found", "TOKEN_NOT_FOUND", "Token not found"),
    409: _response("Conflict", "VAULT_CAPACITY_EXCEEDED", "Vault has reached its token capacity"),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    503: _response("Service unavailable", "KEY_MANAGEMENT_ERROR", "Vault key unavailable"),
}
