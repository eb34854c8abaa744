from tokenvault.services.security.alerts import (
    AUTO_RESOLVE_NOTE,
    BulkAlertResult,
    acknowledge_alert,
    alert_view,
    auto_resolve_expired,
    bulk_acknowledge,
    bulk_resolve,
    create_or_merge_alert,
    get_alert_statistics,
    list_alerts,
    mark_false_positive,
    resolve_alert,
    set_auto_resolve,
)
from tokenvault.services.security.detector import analyze_security_patterns, evaluate_rules

__all__ = [
    "AUTO_RESOLVE_NOTE",
    "BulkAlertResult",
    "acknowledge_alert",
    "alert_view",
    "analyze_security_patterns",
    "auto_resolve_expired",
    "bulk_acknowledge",
    "bulk_resolve",
    "create_or_merge_alert",
    "evaluate_rules",
    "get_alert_statistics",
    "list_alerts",
    "mark_false_positive",
    "resolve_alert",
    "set_auto_resolve",
]
