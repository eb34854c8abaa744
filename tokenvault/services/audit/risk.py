from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from tokenvault.core.config import Settings, get_settings
from tokenvault.domain.values import RISK_LEVELS


HIGH_RISK_OPERATIONS = frozenset({"detokenize", "bulk_detokenize", "export_tokens"})
PCI_RELEVANT_OPERATIONS = frozenset(
    {"tokenize", "detokenize", "bulk_tokenize", "bulk_detokenize", "export_tokens", "vault_key_rotation"}
)

PRIORITY_CRITICAL = 10
PRIORITY_HIGH = 5
PRIORITY_DEFAULT = 1


@dataclass(frozen=True)
class QueueSelection:
    queue_name: str
    priority: int


def _max_risk(left: str, right: str) -> str:
    return left if RISK_LEVELS.index(left) >= RISK_LEVELS.index(right) else right


def calculate_risk_level(
    operation: str,
    result: str,
    *,
    recent_ip_failures: int = 0,
    failure_threshold: int = 3,
    floor: str | None = None,
) -> str:
    # Pure scoring: same event + same history always yields the same level.
    level = "low"
    if operation in HIGH_RISK_OPERATIONS:
        level = "high"
    if result == "failure":
        level = _max_risk(level, "medium")
    if recent_ip_failures > failure_threshold:
        level = _max_risk(level, "high")
    if floor in RISK_LEVELS:
        level = _max_risk(level, floor)
    return level


def is_pci_relevant(operation: str) -> bool:
    return operation in PCI_RELEVANT_OPERATIONS


def select_queue(
    *,
    risk_level: str,
    result: str,
    pci_relevant: bool,
    settings: Settings | None = None,
) -> QueueSelection:
    settings = settings or get_settings()
    if risk_level == "critical" or result == "failure":
        return QueueSelection(settings.audit_queue_critical, PRIORITY_CRITICAL)
    if risk_level == "high" or pci_relevant:
        return QueueSelection(settings.audit_queue_high, PRIORITY_HIGH)
    return QueueSelection(settings.audit_queue_default, PRIORITY_DEFAULT)


def compliance_reference(audit_id: str, created_at: datetime) -> str:
    return f"AUDIT-{created_at.strftime('%Y%m%d')}-{audit_id[:8].upper()}"
