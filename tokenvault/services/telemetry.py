from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone


_counters: dict[str, int] = defaultdict(int)

_AUDIT_METRIC_FIELDS = ("total_operations", "successful_operations", "failed_operations", "high_risk_operations", "pci_operations")


def increment_counter(name: str, value: int = 1) -> None:
    # Counters only grow; single-threaded event loops make += safe without locks.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def reset_counters() -> None:
    _counters.clear()


def _hour_bucket(ts: datetime) -> str:
    return ts.astimezone(timezone.utc).strftime("%Y-%m-%d-%H")


def record_audit_metrics(*, created_at: datetime, result: str, risk_level: str, pci_relevant: bool) -> None:
    # Roll audit outcomes into per-hour buckets for dashboards and summaries.
    prefix = f"audit_metrics.{_hour_bucket(created_at)}"
    increment_counter(f"{prefix}.total_operations")
    if result == "success":
        increment_counter(f"{prefix}.successful_operations")
    elif result == "failure":
        increment_counter(f"{prefix}.failed_operations")
    if risk_level in {"high", "critical"}:
        increment_counter(f"{prefix}.high_risk_operations")
    if pci_relevant:
        increment_counter(f"{prefix}.pci_operations")


def audit_metrics_snapshot(hour: datetime) -> dict[str, int]:
    prefix = f"audit_metrics.{_hour_bucket(hour)}"
    return {field: _counters.get(f"{prefix}.{field}", 0) for field in _AUDIT_METRIC_FIELDS}
