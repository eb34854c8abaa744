from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from tokenvault.core.config import Settings, get_settings
from tokenvault.core.errors import ComplianceReportError
from tokenvault.domain.models import AuditLog
from tokenvault.domain.values import REPORT_TYPES
from tokenvault.persistence.repos import audit as audit_repo
from tokenvault.services.audit.reporting import get_audit_summary


@dataclass(frozen=True)
class Violation:
    requirement: str
    description: str
    severity: str
    count: int | None = None
    user_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True)
class ComplianceAnalysis:
    report_type: str
    compliance_score: int
    risk_assessment: str
    violations: list[Violation] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "report_type": self.report_type,
            "compliance_score": self.compliance_score,
            "risk_assessment": self.risk_assessment,
            "violations": [violation.as_dict() for violation in self.violations],
            "recommendations": list(self.recommendations),
        }


def risk_band(score: int) -> str:
    if score >= 90:
        return "LOW"
    if score >= 70:
        return "MEDIUM"
    if score >= 50:
        return "HIGH"
    return "CRITICAL"


def _finish(report_type: str, score: int, violations: list[Violation], recommendations: list[str]) -> ComplianceAnalysis:
    final = max(0, score)
    return ComplianceAnalysis(
        report_type=report_type,
        compliance_score=final,
        risk_assessment=risk_band(final),
        violations=violations,
        recommendations=recommendations,
    )


def _outside_business_hours(ts: datetime, settings: Settings) -> bool:
    hour = ts.astimezone(ZoneInfo(settings.detector_timezone)).hour
    return hour < settings.compliance_business_hours_start or hour > settings.compliance_business_hours_end


def analyze_pci_dss(logs: Sequence[AuditLog], *, settings: Settings | None = None) -> ComplianceAnalysis:
    settings = settings or get_settings()
    score = 100
    violations: list[Violation] = []
    recommendations: list[str] = []

    off_hours = sum(1 for log in logs if _outside_business_hours(log.created_at, settings))
    if off_hours:
        violations.append(
            Violation(
                requirement="PCI DSS 7.1 - Access Control",
                description=f"Detected {off_hours} access attempts outside business hours",
                severity="medium",
                count=off_hours,
            )
        )
        score -= 10
        recommendations.append("Implement additional monitoring and approval processes for off-hours access")

    failures = sum(1 for log in logs if log.result == "failure")
    if failures > settings.compliance_failure_threshold:
        violations.append(
            Violation(
                requirement="PCI DSS 8.1 - Authentication",
                description=f"High number of failed access attempts: {failures}",
                severity="high",
                count=failures,
            )
        )
        score -= 20
    if failures > settings.compliance_failure_recommendation_threshold:
        recommendations.append("Review and strengthen authentication mechanisms")

    high_risk = sum(1 for log in logs if log.risk_level in {"high", "critical"})
    if logs and high_risk > len(logs) * settings.compliance_high_risk_ratio:
        violations.append(
            Violation(
                requirement="PCI DSS 10.2 - Audit Logs",
                description="High percentage of high-risk operations detected",
                severity="medium",
                count=high_risk,
            )
        )
        score -= 15

    per_user = Counter(log.user_id for log in logs if log.operation == "detokenize")
    bulk_users = [user for user, count in per_user.items() if count > settings.compliance_bulk_detokenize_threshold]
    if bulk_users:
        violations.append(
            Violation(
                requirement="PCI DSS 3.4 - Data Protection",
                description=f"Detected bulk detokenization operations by {len(bulk_users)} users",
                severity="critical",
                count=len(bulk_users),
            )
        )
        score -= 30
        recommendations.append("Implement approval workflows for bulk detokenization operations")

    return _finish("pci_dss", score, violations, recommendations)


def analyze_sox(logs: Sequence[AuditLog], *, settings: Settings | None = None) -> ComplianceAnalysis:
    # Segregation of duties: one identity should not both issue and reveal tokens.
    operations: dict[str, set[str]] = defaultdict(set)
    for log in logs:
        if log.user_id:
            operations[log.user_id].add(log.operation)
    score = 100
    violations: list[Violation] = []
    for user_id in sorted(operations):
        if {"tokenize", "detokenize"} <= operations[user_id]:
            violations.append(
                Violation(
                    requirement="SOX - Segregation of Duties",
                    description=f"User {user_id} performed both tokenize and detokenize operations",
                    severity="high",
                    user_id=user_id,
                )
            )
            score -= 25
    recommendations = ["Separate tokenization and detokenization duties across roles"] if violations else []
    return _finish("sox", score, violations, recommendations)


def analyze_gdpr(logs: Sequence[AuditLog], *, settings: Settings | None = None) -> ComplianceAnalysis:
    score = 100
    violations: list[Violation] = []
    if not any(log.operation == "detokenize" for log in logs):
        violations.append(
            Violation(
                requirement="GDPR Art. 30 - Records of processing",
                description="No data access logs found for the reporting period",
                severity="medium",
            )
        )
        score -= 15
    return _finish("gdpr", score, violations, [])


ANALYZERS: dict[str, Callable[..., ComplianceAnalysis]] = {
    "pci_dss": analyze_pci_dss,
    "sox": analyze_sox,
    "gdpr": analyze_gdpr,
}


def analyze(report_type: str, logs: Sequence[AuditLog], *, settings: Settings | None = None) -> ComplianceAnalysis:
    analyzer = ANALYZERS.get(report_type)
    if analyzer is None:
        raise ComplianceReportError(
            "Unsupported report type",
            code="INVALID_REPORT_TYPE",
            context={"report_type": report_type, "supported": list(REPORT_TYPES)},
        )
    return analyzer(logs, settings=settings)


def summarize_logs(logs: Sequence[AuditLog]) -> dict[str, Any]:
    return {
        "total_logs": len(logs),
        "unique_users": len({log.user_id for log in logs if log.user_id}),
        "unique_vaults": len({log.vault_id for log in logs if log.vault_id}),
        "operations_by_type": dict(Counter(log.operation for log in logs)),
        "high_risk_count": sum(1 for log in logs if log.risk_level == "high"),
        "critical_count": sum(1 for log in logs if log.risk_level == "critical"),
        "failure_count": sum(1 for log in logs if log.result == "failure"),
    }


def _peak_hour(logs: Sequence[AuditLog]) -> int | None:
    if not logs:
        return None
    return Counter(log.created_at.hour for log in logs).most_common(1)[0][0]


async def generate_compliance_data(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    vault_id: str | None = None,
) -> dict[str, Any]:
    # Synchronous snapshot over PCI-relevant records; the report job embeds it.
    logs = await audit_repo.fetch_window(session, start=start, end=end, vault_id=vault_id, pci_only=True)
    error_codes = Counter((log.response_metadata or {}).get("error_code") for log in logs)
    operations = Counter(log.operation for log in logs)
    return {
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "vault_id": vault_id,
        "summary": await get_audit_summary(session, start=start, end=end, vault_id=vault_id),
        "access_patterns": {
            "unique_users": len({log.user_id for log in logs if log.user_id}),
            "unique_ips": len({log.ip_address for log in logs if log.ip_address}),
            "peak_hour": _peak_hour(logs),
        },
        "security_events": {
            "failed_operations": sum(1 for log in logs if log.result == "failure"),
            "high_risk_operations": sum(1 for log in logs if log.risk_level == "high"),
            "compromised_tokens": error_codes.get("TOKEN_INTEGRITY_FAILED", 0),
        },
        "data_retention": {
            "tokens_created": operations.get("tokenize", 0) + operations.get("bulk_tokenize", 0),
            "key_rotations": operations.get("vault_key_rotation", 0),
        },
    }
