from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from tokenvault.apps.api.main import create_app
from tokenvault.persistence.db import SessionLocal
from tokenvault.services.auth.api_keys import revoke_api_key
from tokenvault.tests.utils.auth import create_test_api_key
from tokenvault.tests.utils.factories import create_test_vault, fetch_audit_logs


def _client() -> AsyncClient:
    transport = ASGITransport(app=create_app())
    return AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_public() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["database"] == "ok"
    assert body["meta"]["request_id"] == "req-health"
    assert response.headers["X-Request-Id"] == "req-health"


@pytest.mark.asyncio
async def test_missing_and_revoked_keys_are_unauthorized() -> None:
    vault = await create_test_vault()
    payload = {"vault_id": vault.id, "data": "4111111111111111"}
    async with _client() as client:
        missing = await client.post("/v1/tokens/tokenize", json=payload)
        bad_scheme = await client.post("/v1/tokens/tokenize", json=payload, headers={"Authorization": "Basic abc"})
        unknown = await client.post(
            "/v1/tokens/tokenize", json=payload, headers={"Authorization": "Bearer tvk_unknown_secret"}
        )
    for response in (missing, bad_scheme, unknown):
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert missing.headers["WWW-Authenticate"] == "Bearer"

    _raw, headers, _user, key_id = await create_test_api_key(role="operator")
    async with SessionLocal() as session:
        assert await revoke_api_key(session, key_id) is True
    async with _client() as client:
        revoked = await client.post("/v1/tokens/tokenize", json=payload, headers=headers)
    assert revoked.status_code == 401


@pytest.mark.asyncio
async def test_reader_cannot_tokenize() -> None:
    vault = await create_test_vault()
    _raw, headers, _user, _key = await create_test_api_key(role="reader")
    async with _client() as client:
        response = await client.post(
            "/v1/tokens/tokenize", json={"vault_id": vault.id, "data": "4111111111111111"}, headers=headers
        )
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_operator_tokenize_and_detokenize() -> None:
    vault = await create_test_vault()
    _raw, headers, user_id, key_id = await create_test_api_key(role="operator")
    async with _client() as client:
        created = await client.post(
            "/v1/tokens/tokenize",
            json={"vault_id": vault.id, "data": "4111111111111111", "metadata": {"customer": "c-1"}},
            headers={**headers, "X-Request-Id": "req-tokenize"},
        )
        assert created.status_code == 201
        token = created.json()["data"]
        assert token["status"] == "active"
        assert token["metadata"] == {"customer": "c-1"}
        assert "encrypted_data" not in token

        revealed = await client.post(
            "/v1/tokens/detokenize", json={"token": token["token_value"]}, headers=headers
        )
        assert revealed.status_code == 200
        assert revealed.json()["data"]["data"] == "4111111111111111"

        searched = await client.post(
            "/v1/tokens/search", json={"vault_id": vault.id, "metadata": {"customer": "c-1"}}, headers=headers
        )
        assert searched.json()["data"]["count"] == 1

    tokenize_log = (await fetch_audit_logs("tokenize"))[0]
    assert tokenize_log.user_id == user_id
    assert tokenize_log.api_key_id == key_id
    assert tokenize_log.request_id == "req-tokenize"
    assert tokenize_log.ip_address is not None


@pytest.mark.asyncio
async def test_domain_errors_use_error_envelope() -> None:
    vault = await create_test_vault(max_tokens=1)
    _raw, headers, _user, _key = await create_test_api_key(role="operator")
    async with _client() as client:
        await client.post("/v1/tokens/tokenize", json={"vault_id": vault.id, "data": "first"}, headers=headers)
        full = await client.post("/v1/tokens/tokenize", json={"vault_id": vault.id, "data": "second"}, headers=headers)
        missing_vault = await client.post(
            "/v1/tokens/tokenize", json={"vault_id": "no-such-vault", "data": "x"}, headers=headers
        )
        missing_token = await client.post("/v1/tokens/detokenize", json={"token": "tok_missing"}, headers=headers)
    assert full.status_code == 409
    assert full.json()["error"]["code"] == "VAULT_CAPACITY_EXCEEDED"
    assert missing_vault.status_code == 404
    assert missing_vault.json()["error"]["code"] == "VAULT_NOT_FOUND"
    assert missing_token.status_code == 404
    assert missing_token.json()["error"]["code"] == "TOKEN_NOT_FOUND"
    assert "second" not in full.text


@pytest.mark.asyncio
async def test_validation_errors_use_error_envelope() -> None:
    _raw, headers, _user, _key = await create_test_api_key(role="operator")
    async with _client() as client:
        response = await client.post(
            "/v1/tokens/tokenize", json={"vault_id": "v", "data": "", "token_type": "reversible"}, headers=headers
        )
    assert response.status_code == 422
    body = response.json()
    assert body["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert body["error"]["details"]["errors"]


@pytest.mark.asyncio
async def test_admin_manages_vaults() -> None:
    _raw, admin_headers, admin_id, _key = await create_test_api_key(role="admin")
    _raw, operator_headers, _user, _key = await create_test_api_key(role="operator")
    async with _client() as client:
        forbidden = await client.post(
            "/v1/vaults", json={"name": "cards", "data_type": "card"}, headers=operator_headers
        )
        assert forbidden.status_code == 403

        created = await client.post(
            "/v1/vaults",
            json={"name": "cards", "data_type": "card", "max_tokens": 10, "retention_days": 365},
            headers=admin_headers,
        )
        assert created.status_code == 201
        vault = created.json()["data"]
        assert vault["status"] == "active"
        assert vault["created_by"] == admin_id
        assert "tokenize" in vault["allowed_operations"]

        duplicate = await client.post(
            "/v1/vaults", json={"name": "cards", "data_type": "card"}, headers=admin_headers
        )
        assert duplicate.status_code == 409

        rotated = await client.post(f"/v1/vaults/{vault['id']}/rotate-key", headers=admin_headers)
        assert rotated.status_code == 200
        stats = await client.get(f"/v1/vaults/{vault['id']}/statistics", headers=operator_headers)
        assert stats.json()["data"]["active_key_version"] == 2

        deactivated = await client.post(f"/v1/vaults/{vault['id']}/deactivate", headers=admin_headers)
        assert deactivated.json()["data"]["status"] == "inactive"
        again = await client.post(f"/v1/vaults/{vault['id']}/deactivate", headers=admin_headers)
        assert again.status_code == 409


@pytest.mark.asyncio
async def test_admin_requests_compliance_report() -> None:
    _raw, headers, admin_id, _key = await create_test_api_key(role="admin")
    now = datetime.now(timezone.utc)
    async with _client() as client:
        created = await client.post(
            "/v1/compliance/reports",
            json={
                "report_type": "pci_dss",
                "start_date": (now - timedelta(days=1)).isoformat(),
                "end_date": now.isoformat(),
            },
            headers=headers,
        )
        assert created.status_code == 202
        report = created.json()["data"]
        assert report["status"] == "completed"
        assert report["generated_by"] == admin_id

        artifact = await client.get(f"/v1/compliance/reports/{report['id']}/artifact", headers=headers)
        assert artifact.status_code == 200
        assert artifact.json()["data"]["report_id"] == report["id"]

        retry = await client.post(f"/v1/compliance/reports/{report['id']}/retry", headers=headers)
        assert retry.status_code == 409
        assert retry.json()["error"]["code"] == "INVALID_REPORT_STATE"

        missing = await client.get("/v1/compliance/reports/unknown", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "REPORT_NOT_FOUND"


@pytest.mark.asyncio
async def test_manual_audit_entry_and_alert_listing() -> None:
    _raw, operator_headers, _user, _key = await create_test_api_key(role="operator")
    _raw, admin_headers, _admin, _key = await create_test_api_key(role="admin")
    async with _client() as client:
        created = await client.post(
            "/v1/audit/logs",
            json={"message": "manual review", "risk_level": "high", "metadata": {"password": "hunter2"}},
            headers=operator_headers,
        )
        assert created.status_code == 202
        audit_id = created.json()["data"]["audit_id"]

        logs = await client.get("/v1/audit/logs", params={"operation": "manual_entry"}, headers=admin_headers)
        assert logs.status_code == 200
        alerts = await client.get("/v1/alerts", headers=operator_headers)
        assert alerts.status_code == 200

    manual = (await fetch_audit_logs("manual_entry"))[0]
    assert manual.id == audit_id
    assert manual.risk_level == "high"
    assert manual.request_metadata["password"] == "[REDACTED]"
    assert any(item["type"] == "high_risk_operation" for item in alerts.json()["data"]["items"])
