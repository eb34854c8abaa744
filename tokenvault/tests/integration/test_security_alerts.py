from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tokenvault.core.config import Settings
from tokenvault.core.errors import InvalidAlertTransitionError, TokenNotFoundError
from tokenvault.persistence.db import SessionLocal
from tokenvault.services import tokenization
from tokenvault.services.security import (
    AUTO_RESOLVE_NOTE,
    acknowledge_alert,
    auto_resolve_expired,
    bulk_resolve,
    create_or_merge_alert,
    get_alert_statistics,
    mark_false_positive,
    resolve_alert,
)
from tokenvault.services.security.detector import is_off_hours
from tokenvault.tests.utils.factories import create_test_vault, fetch_alerts, operator_context


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _raise_alert(
    *,
    alert_type: str = "high_volume_ip",
    severity: str = "high",
    ip_address: str = "203.0.113.7",
    occurred_at: datetime | None = None,
):
    async with SessionLocal() as session:
        alert, _created = await create_or_merge_alert(
            session,
            alert_type=alert_type,
            severity=severity,
            title="Test alert",
            message="raised by test",
            ip_address=ip_address,
            user_id="operator-1",
            vault_id=None,
            occurred_at=occurred_at,
        )
    return alert


@pytest.mark.asyncio
async def test_repeated_failures_raise_one_merged_alert() -> None:
    context = operator_context(ip_address="198.51.100.20")
    for _ in range(4):
        async with SessionLocal() as session:
            with pytest.raises(TokenNotFoundError):
                await tokenization.detokenize(session, token_value="tok_unknown_value", context=context)
    assert await fetch_alerts("repeated_failures") == []

    async with SessionLocal() as session:
        with pytest.raises(TokenNotFoundError):
            await tokenization.detokenize(session, token_value="tok_unknown_value", context=context)
    alerts = await fetch_alerts("repeated_failures")
    assert len(alerts) == 1
    assert alerts[0].count == 5
    assert alerts[0].severity == "high"
    assert alerts[0].ip_address == "198.51.100.20"
    assert alerts[0].metadata_json["failure_count"] == 5

    async with SessionLocal() as session:
        with pytest.raises(TokenNotFoundError):
            await tokenization.detokenize(session, token_value="tok_unknown_value", context=context)
    alerts = await fetch_alerts("repeated_failures")
    assert len(alerts) == 1
    assert alerts[0].count == 6


@pytest.mark.asyncio
async def test_tokenize_from_new_ip_and_detokenize_raise_alerts() -> None:
    vault = await create_test_vault()
    context = operator_context(ip_address="192.0.2.44")
    async with SessionLocal() as session:
        token = await tokenization.tokenize(session, vault_id=vault.id, plaintext="4000000000000002", context=context)
    new_ip = await fetch_alerts("new_ip_tokenization")
    assert len(new_ip) == 1
    assert new_ip[0].severity == "medium"
    assert new_ip[0].auto_resolve_at is not None

    async with SessionLocal() as session:
        await tokenization.detokenize(session, token_value=token.token_value, context=context)
    high_risk = await fetch_alerts("high_risk_operation")
    assert len(high_risk) == 1
    assert high_risk[0].vault_id == vault.id
    assert high_risk[0].auto_resolve_at is None


@pytest.mark.asyncio
async def test_merge_keeps_scope_and_escalates_severity() -> None:
    first = await _raise_alert(severity="medium")
    second = await _raise_alert(severity="high")
    other_ip = await _raise_alert(severity="medium", ip_address="203.0.113.8")
    assert first.id == second.id
    assert other_ip.id != first.id
    merged = (await fetch_alerts("high_volume_ip"))[0]
    assert merged.count == 2
    assert merged.severity == "high"


@pytest.mark.asyncio
async def test_merge_window_bounds_repeat_occurrences() -> None:
    start = _utc_now() - timedelta(hours=30)
    first = await _raise_alert(occurred_at=start)
    within = await _raise_alert(occurred_at=start + timedelta(hours=1))
    assert within.id == first.id
    assert within.count == 2

    outside = await _raise_alert(occurred_at=start + timedelta(hours=25))
    assert outside.id != first.id
    assert outside.count == 1
    counts = sorted(alert.count for alert in await fetch_alerts("high_volume_ip"))
    assert counts == [1, 2]


@pytest.mark.asyncio
async def test_resolved_alert_is_not_merged_into() -> None:
    first = await _raise_alert()
    async with SessionLocal() as session:
        await resolve_alert(session, first.id, user_id="analyst")
    second = await _raise_alert()
    assert second.id != first.id


@pytest.mark.asyncio
async def test_critical_alert_notifies(dispatcher) -> None:
    await _raise_alert(alert_type="data_exfiltration", severity="critical")
    notices = dispatcher.channel("security_alert")
    assert len(notices) == 1
    assert notices[0]["severity"] == "critical"

    await _raise_alert(alert_type="data_exfiltration", severity="critical")
    assert len(dispatcher.channel("security_alert")) == 1


@pytest.mark.asyncio
async def test_alert_transitions() -> None:
    alert = await _raise_alert(severity="medium")
    async with SessionLocal() as session:
        acknowledged = await acknowledge_alert(session, alert.id, user_id="analyst")
    assert acknowledged.status == "acknowledged"
    assert acknowledged.acknowledged_by == "analyst"
    assert acknowledged.auto_resolve_at is None

    async with SessionLocal() as session:
        with pytest.raises(InvalidAlertTransitionError):
            await acknowledge_alert(session, alert.id, user_id="analyst")

    async with SessionLocal() as session:
        resolved = await resolve_alert(session, alert.id, user_id="analyst", notes="benign batch job")
    assert resolved.status == "resolved"
    assert resolved.resolution_notes == "benign batch job"
    assert resolved.resolved_at is not None

    async with SessionLocal() as session:
        with pytest.raises(InvalidAlertTransitionError):
            await mark_false_positive(session, alert.id, user_id="analyst")


@pytest.mark.asyncio
async def test_bulk_resolve_reports_skipped_alerts() -> None:
    open_alert = await _raise_alert(ip_address="203.0.113.10")
    done_alert = await _raise_alert(ip_address="203.0.113.11")
    async with SessionLocal() as session:
        await mark_false_positive(session, done_alert.id, user_id="analyst")
    async with SessionLocal() as session:
        result = await bulk_resolve(
            session, [open_alert.id, done_alert.id, "missing-alert"], user_id="analyst", notes="sweep"
        )
    assert result.updated == [open_alert.id]
    assert result.skipped == {done_alert.id: "invalid_status:false_positive", "missing-alert": "not_found"}
    assert result.as_dict()["updated_count"] == 1


@pytest.mark.asyncio
async def test_auto_resolve_only_touches_open_low_signal_alerts() -> None:
    medium = await _raise_alert(severity="medium", ip_address="203.0.113.20")
    acknowledged = await _raise_alert(severity="low", ip_address="203.0.113.21")
    high = await _raise_alert(severity="high", ip_address="203.0.113.22")
    async with SessionLocal() as session:
        await acknowledge_alert(session, acknowledged.id, user_id="analyst")

    async with SessionLocal() as session:
        assert await auto_resolve_expired(session, now=_utc_now() + timedelta(hours=1)) == 0
    async with SessionLocal() as session:
        resolved = await auto_resolve_expired(session, now=_utc_now() + timedelta(hours=25))
    assert resolved == 1

    by_id = {alert.id: alert for alert in await fetch_alerts()}
    assert by_id[medium.id].status == "resolved"
    assert by_id[medium.id].resolved_by == "system"
    assert by_id[medium.id].resolution_notes == AUTO_RESOLVE_NOTE
    assert by_id[acknowledged.id].status == "acknowledged"
    assert by_id[high.id].status == "open"


@pytest.mark.asyncio
async def test_alert_statistics() -> None:
    await _raise_alert(severity="critical", alert_type="data_exfiltration")
    await _raise_alert(severity="medium", ip_address="203.0.113.30")
    async with SessionLocal() as session:
        stats = await get_alert_statistics(session, days=1)
    assert stats["total"] == 2
    assert stats["open_critical"] == 1
    assert stats["by_type"] == {"data_exfiltration": 1, "high_volume_ip": 1}


def test_off_hours_window_wraps_midnight() -> None:
    settings = Settings(detector_off_hours_start=22, detector_off_hours_end=6, detector_timezone="UTC")
    assert is_off_hours(datetime(2024, 3, 1, 23, 30, tzinfo=timezone.utc), settings=settings)
    assert is_off_hours(datetime(2024, 3, 1, 5, 59, tzinfo=timezone.utc), settings=settings)
    assert not is_off_hours(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc), settings=settings)
    disabled = Settings(detector_off_hours_start=0, detector_off_hours_end=0)
    assert not is_off_hours(datetime(2024, 3, 1, 3, 0, tzinfo=timezone.utc), settings=disabled)
