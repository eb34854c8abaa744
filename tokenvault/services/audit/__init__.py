from tokenvault.services.audit.pipeline import (
    AuditJobPayload,
    get_audit_queue,
    log_event,
    prepare_audit_record,
    process_audit_log,
    set_audit_queue,
)
from tokenvault.services.audit.reporting import (
    export_for_compliance,
    get_audit_statistics,
    get_audit_summary,
    list_audit_logs,
)

__all__ = [
    "AuditJobPayload",
    "export_for_compliance",
    "get_audit_queue",
    "get_audit_statistics",
    "get_audit_summary",
    "list_audit_logs",
    "log_event",
    "prepare_audit_record",
    "process_audit_log",
    "set_audit_queue",
]
