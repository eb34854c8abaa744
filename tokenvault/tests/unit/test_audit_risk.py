from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tokenvault.core.config import get_settings
from tokenvault.domain.values import RequestContext
from tokenvault.services.audit.context import sanitize_metadata
from tokenvault.services.audit.pipeline import prepare_audit_record
from tokenvault.services.audit.risk import (
    PRIORITY_CRITICAL,
    PRIORITY_DEFAULT,
    PRIORITY_HIGH,
    calculate_risk_level,
    compliance_reference,
    is_pci_relevant,
    select_queue,
)


@pytest.mark.parametrize(
    ("operation", "result", "failures", "expected"),
    [
        ("search", "success", 0, "low"),
        ("tokenize", "failure", 0, "medium"),
        ("detokenize", "success", 0, "high"),
        ("detokenize", "failure", 0, "high"),
        ("search", "success", 4, "high"),
        ("search", "success", 3, "low"),
    ],
)
def test_calculate_risk_level(operation: str, result: str, failures: int, expected: str) -> None:
    assert calculate_risk_level(operation, result, recent_ip_failures=failures, failure_threshold=3) == expected


def test_risk_floor_only_raises_level() -> None:
    assert calculate_risk_level("search", "success", floor="critical") == "critical"
    assert calculate_risk_level("detokenize", "success", floor="low") == "high"
    assert calculate_risk_level("search", "success", floor="bogus") == "low"


def test_select_queue_lanes() -> None:
    settings = get_settings()
    failure = select_queue(risk_level="medium", result="failure", pci_relevant=False, settings=settings)
    assert (failure.queue_name, failure.priority) == (settings.audit_queue_critical, PRIORITY_CRITICAL)
    critical = select_queue(risk_level="critical", result="success", pci_relevant=False, settings=settings)
    assert critical.queue_name == settings.audit_queue_critical
    pci = select_queue(risk_level="low", result="success", pci_relevant=True, settings=settings)
    assert (pci.queue_name, pci.priority) == (settings.audit_queue_high, PRIORITY_HIGH)
    default = select_queue(risk_level="low", result="success", pci_relevant=False, settings=settings)
    assert (default.queue_name, default.priority) == (settings.audit_queue_default, PRIORITY_DEFAULT)


def test_pci_relevance_and_reference_format() -> None:
    assert is_pci_relevant("detokenize")
    assert is_pci_relevant("vault_key_rotation")
    assert not is_pci_relevant("search")
    created_at = datetime(2024, 3, 9, 12, 0, tzinfo=timezone.utc)
    assert compliance_reference("abcdef12-3456", created_at) == "AUDIT-20240309-ABCDEF12"


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    cleaned = sanitize_metadata(
        {
            "Card_Number": "4111111111111111",
            "nested": {"api_key": "tvk_x", "safe": 1},
            "items": [{"password": "p"}, {"count": 2}],
        }
    )
    assert cleaned["Card_Number"] == "[REDACTED]"
    assert cleaned["nested"] == {"api_key": "[REDACTED]", "safe": 1}
    assert cleaned["items"] == [{"password": "[REDACTED]"}, {"count": 2}]


def test_prepare_audit_record_is_pure_and_routes_failures() -> None:
    occurred = datetime(2024, 1, 2, 3, 4, tzinfo=timezone.utc)
    payload = prepare_audit_record(
        operation="detokenize",
        result="failure",
        context=RequestContext(user_id="u1", ip_address="10.0.0.1", request_id="r1"),
        request_metadata={"token_value": "secret", "token_prefix": "abcd1234"},
        occurred_at=occurred,
        audit_id="0f0e0d0c-aaaa-bbbb-cccc-000000000000",
    )
    assert payload.risk_level == "high"
    assert payload.pci_relevant is True
    assert payload.compliance_reference == "AUDIT-20240102-0F0E0D0C"
    assert payload.queue_name == get_settings().audit_queue_critical
    assert payload.request_metadata == {"token_value": "[REDACTED]", "token_prefix": "abcd1234"}
    assert payload.user_id == "u1"
    assert payload.created_at == occurred


def test_prepare_audit_record_without_context() -> None:
    payload = prepare_audit_record(operation="search", result="success", context=None)
    assert payload.user_id is None
    assert payload.compliance_reference is None
    assert payload.queue_name == get_settings().audit_queue_default
