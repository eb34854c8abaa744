from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from arq import Retry
from sqlalchemy import update

from tokenvault.core.errors import AuditQueueError, TokenNotFoundError
from tokenvault.domain.models import AuditLog
from tokenvault.domain.values import RequestContext
from tokenvault.persistence.db import SessionLocal
from tokenvault.services import tokenization
from tokenvault.services.audit import pipeline
from tokenvault.services.audit import get_audit_statistics, get_audit_summary, set_audit_queue
from tokenvault.services.audit import queue as audit_queue
from tokenvault.services.audit.pipeline import archive_old_logs, prepare_audit_record, process_audit_log
from tokenvault.services.telemetry import counters_snapshot
from tokenvault.tests.utils.factories import create_test_vault, fetch_audit_logs, operator_context
from tokenvault.tests.utils.recorders import RecordingAuditQueue
from tokenvault.workers.audit_worker import process_audit_log as audit_job
from tokenvault.workers.compliance_worker import maintenance_sweep


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_events_are_routed_to_priority_lanes() -> None:
    queue = RecordingAuditQueue()
    set_audit_queue(queue)
    vault = await create_test_vault()
    async with SessionLocal() as session:
        token = await tokenization.tokenize(session, vault_id=vault.id, plaintext="lane-value")
        await tokenization.detokenize(session, token_value=token.token_value)
        with pytest.raises(TokenNotFoundError):
            await tokenization.detokenize(session, token_value="tok_missing_value")

    lanes = {payload["operation"] + ":" + payload["result"]: (name, priority) for name, payload, priority in queue.jobs}
    assert lanes["vault_create:success"] == ("audit_logs", 1)
    assert lanes["tokenize:success"] == ("audit_logs_high", 5)
    assert lanes["detokenize:success"] == ("audit_logs_high", 5)
    assert lanes["detokenize:failure"] == ("audit_logs_critical", 10)
    # Recording only; nothing reached the database.
    assert await fetch_audit_logs() == []


@pytest.mark.asyncio
async def test_worker_job_persists_idempotently() -> None:
    payload = prepare_audit_record(
        operation="manual_entry",
        result="success",
        context=RequestContext(user_id="auditor", ip_address="10.9.9.9"),
        request_metadata={"message": "checked"},
    ).model_dump(mode="json")
    first = await audit_job({"job_try": 1}, payload)
    second = await audit_job({"job_try": 2}, payload)
    assert first == second == payload["audit_id"]
    logs = await fetch_audit_logs("manual_entry")
    assert len(logs) == 1
    assert logs[0].processed_at is not None
    assert logs[0].pci_relevant is False
    assert logs[0].compliance_reference is None


@pytest.mark.asyncio
async def test_persist_failure_retries_then_escalates(monkeypatch, dispatcher) -> None:
    async def _broken_persist(session, payload):
        raise RuntimeError("database offline")

    monkeypatch.setattr(pipeline, "persist_audit_record", _broken_persist)
    payload = prepare_audit_record(operation="tokenize", result="success", context=operator_context())

    with pytest.raises(Retry):
        await process_audit_log(payload, attempt=1, max_tries=3)
    assert dispatcher.channel("system_alert") == []

    assert await process_audit_log(payload, attempt=3, max_tries=3) is None
    escalation = dispatcher.channel("system_alert")[0]
    assert escalation["type"] == "audit_persist_failed"
    assert escalation["attempts"] == 3
    assert escalation["error_code"] == "AUDIT_PERSIST_FAILED"
    assert escalation["compliance_reference"] == payload.compliance_reference
    assert counters_snapshot()["audit_persist_failures_total"] == 1


@pytest.mark.asyncio
async def test_persist_timeout_follows_retry_and_escalation(monkeypatch, dispatcher) -> None:
    async def _stalled_persist(session, payload):
        await asyncio.sleep(5)

    monkeypatch.setattr(pipeline, "persist_audit_record", _stalled_persist)
    monkeypatch.setattr(pipeline, "job_time_budget", lambda job_timeout_s: 0.05)
    payload = prepare_audit_record(operation="detokenize", result="success", context=operator_context())

    with pytest.raises(Retry):
        await process_audit_log(payload, attempt=1, max_tries=3)
    assert dispatcher.channel("system_alert") == []

    assert await process_audit_log(payload, attempt=3, max_tries=3) is None
    escalation = dispatcher.channel("system_alert")[0]
    assert escalation["type"] == "audit_persist_failed"
    assert escalation["attempts"] == 3
    assert "TimeoutError" in escalation["error"]
    assert counters_snapshot()["audit_persist_failures_total"] == 1


@pytest.mark.asyncio
async def test_attempt_beyond_max_tries_still_escalates(monkeypatch, dispatcher) -> None:
    async def _broken_persist(session, payload):
        raise RuntimeError("database offline")

    monkeypatch.setattr(pipeline, "persist_audit_record", _broken_persist)
    payload = prepare_audit_record(operation="tokenize", result="success", context=operator_context())
    assert await process_audit_log(payload, attempt=4, max_tries=3) is None
    assert dispatcher.channel("system_alert")[0]["attempts"] == 4


@pytest.mark.asyncio
async def test_redis_enqueue_failure_escalates_as_queue_error(monkeypatch, dispatcher) -> None:
    async def _unreachable_pool():
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(audit_queue, "get_redis_pool", _unreachable_pool)
    with pytest.raises(AuditQueueError) as excinfo:
        await audit_queue.ArqAuditQueue().enqueue("audit_logs", {"audit_id": "audit-1"}, 1)
    assert excinfo.value.context["queue"] == "audit_logs"

    set_audit_queue(audit_queue.ArqAuditQueue())
    vault = await create_test_vault()
    escalation = dispatcher.channel("system_alert")[0]
    assert escalation["type"] == "audit_enqueue_failed"
    assert escalation["error_code"] == "AUDIT_ENQUEUE_FAILED"
    assert escalation["operation"] == "vault_create"
    assert escalation["vault_id"] == vault.id


@pytest.mark.asyncio
async def test_detector_failure_keeps_audit_record(monkeypatch) -> None:
    async def _broken_detector(session, audit_log):
        raise RuntimeError("rule crashed")

    monkeypatch.setattr(pipeline, "analyze_security_patterns", _broken_detector)
    payload = prepare_audit_record(operation="search", result="success", context=operator_context())
    stored = await process_audit_log(payload, attempt=1, max_tries=3)
    assert stored is not None
    assert len(await fetch_audit_logs("search")) == 1
    assert counters_snapshot()["security_detector_failures_total"] == 1


@pytest.mark.asyncio
async def test_archive_marks_old_rows_only() -> None:
    await create_test_vault()
    await create_test_vault()
    old_id = (await fetch_audit_logs())[0].id
    async with SessionLocal() as session:
        await session.execute(
            update(AuditLog).where(AuditLog.id == old_id).values(created_at=_utc_now() - timedelta(days=120))
        )
        await session.commit()
    async with SessionLocal() as session:
        archived = await archive_old_logs(session, cutoff=_utc_now() - timedelta(days=90), batch_size=1)
    assert archived == 1
    by_id = {log.id: log for log in await fetch_audit_logs()}
    assert by_id[old_id].archived_at is not None
    assert sum(1 for log in by_id.values() if log.archived_at is None) == 1


@pytest.mark.asyncio
async def test_audit_summary_and_statistics() -> None:
    vault = await create_test_vault()
    async with SessionLocal() as session:
        token = await tokenization.tokenize(session, vault_id=vault.id, plaintext="summary-value")
        await tokenization.detokenize(session, token_value=token.token_value)
    now = _utc_now()
    async with SessionLocal() as session:
        summary = await get_audit_summary(session, start=now - timedelta(hours=1), end=now + timedelta(hours=1))
        stats = await get_audit_statistics(session, hours=1)
    assert summary["total_operations"] == 3
    assert summary["pci_relevant_operations"] == 2
    assert summary["by_risk_level"] == {"low": 2, "high": 1}
    assert stats["by_operation"]["detokenize"] == 1
    assert sum(bucket["pci_operations"] for bucket in stats["hourly_metrics"]) == 2


@pytest.mark.asyncio
async def test_maintenance_cron_job() -> None:
    results = await maintenance_sweep({})
    assert results["cleanup_expired_tokens"] == 0
    assert results["rotate_due_keys"] == 0
