from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from tokenvault.core.errors import ComplianceReportError
from tokenvault.domain.models import AuditLog
from tokenvault.services.compliance.analyzer import (
    analyze,
    analyze_gdpr,
    analyze_pci_dss,
    analyze_sox,
    risk_band,
    summarize_logs,
)


BUSINESS_HOUR = datetime(2024, 5, 6, 10, 0, tzinfo=timezone.utc)
NIGHT = datetime(2024, 5, 6, 2, 0, tzinfo=timezone.utc)


def _log(operation: str = "tokenize", *, result: str = "success", user_id: str | None = "u1", **overrides) -> AuditLog:
    fields = {
        "id": str(uuid4()),
        "operation": operation,
        "result": result,
        "user_id": user_id,
        "risk_level": "low",
        "pci_relevant": True,
        "created_at": BUSINESS_HOUR,
    }
    fields.update(overrides)
    return AuditLog(**fields)


@pytest.mark.parametrize(
    ("score", "band"),
    [(100, "LOW"), (90, "LOW"), (89, "MEDIUM"), (70, "MEDIUM"), (69, "HIGH"), (50, "HIGH"), (49, "CRITICAL"), (0, "CRITICAL")],
)
def test_risk_band_thresholds(score: int, band: str) -> None:
    assert risk_band(score) == band


def test_pci_clean_window_scores_full() -> None:
    analysis = analyze_pci_dss([_log() for _ in range(5)])
    assert analysis.compliance_score == 100
    assert analysis.risk_assessment == "LOW"
    assert analysis.violations == []


def test_pci_off_hours_access() -> None:
    analysis = analyze_pci_dss([_log(), _log(created_at=NIGHT)])
    assert analysis.compliance_score == 90
    assert analysis.violations[0].requirement.startswith("PCI DSS 7.1")
    assert analysis.violations[0].count == 1


def test_pci_failures_and_high_risk_share() -> None:
    logs = [_log(result="failure") for _ in range(51)] + [_log(risk_level="high") for _ in range(10)]
    analysis = analyze_pci_dss(logs)
    requirements = [violation.requirement for violation in analysis.violations]
    assert any(req.startswith("PCI DSS 8.1") for req in requirements)
    assert any(req.startswith("PCI DSS 10.2") for req in requirements)
    assert analysis.compliance_score == 65
    assert analysis.risk_assessment == "HIGH"
    assert "Review and strengthen authentication mechanisms" in analysis.recommendations


def test_pci_bulk_detokenization_is_critical() -> None:
    logs = [_log("detokenize", risk_level="low", user_id="heavy") for _ in range(101)]
    analysis = analyze_pci_dss(logs)
    bulk = [v for v in analysis.violations if v.requirement.startswith("PCI DSS 3.4")]
    assert bulk and bulk[0].severity == "critical"
    assert analysis.compliance_score == 70


def test_sox_segregation_of_duties() -> None:
    logs = [
        _log("tokenize", user_id="alice"),
        _log("detokenize", user_id="alice"),
        _log("tokenize", user_id="bob"),
        _log("tokenize", user_id="carol"),
        _log("detokenize", user_id="carol"),
    ]
    analysis = analyze_sox(logs)
    assert analysis.compliance_score == 50
    assert [violation.user_id for violation in analysis.violations] == ["alice", "carol"]
    assert analysis.risk_assessment == "HIGH"


def test_gdpr_requires_access_records() -> None:
    assert analyze_gdpr([_log("tokenize")]).compliance_score == 85
    assert analyze_gdpr([_log("detokenize")]).compliance_score == 100


def test_score_never_negative() -> None:
    logs = [_log("tokenize", user_id=f"u{i}") for i in range(6)] + [_log("detokenize", user_id=f"u{i}") for i in range(6)]
    assert analyze_sox(logs).compliance_score == 0


def test_analyze_rejects_unknown_type() -> None:
    with pytest.raises(ComplianceReportError) as excinfo:
        analyze("hipaa", [])
    assert excinfo.value.code == "INVALID_REPORT_TYPE"


def test_summarize_logs() -> None:
    logs = [
        _log("tokenize", vault_id="v1"),
        _log("detokenize", user_id="u2", vault_id="v2", risk_level="high"),
        _log("detokenize", result="failure", user_id=None, risk_level="critical"),
    ]
    summary = summarize_logs(logs)
    assert summary["total_logs"] == 3
    assert summary["unique_users"] == 2
    assert summary["unique_vaults"] == 2
    assert summary["operations_by_type"] == {"tokenize": 1, "detokenize": 2}
    assert (summary["high_risk_count"], summary["critical_count"], summary["failure_count"]) == (1, 1, 1)
