from __future__ import annotations

from tokenvault.services.compliance.analyzer import (
    ANALYZERS,
    ComplianceAnalysis,
    Violation,
    analyze,
    analyze_gdpr,
    analyze_pci_dss,
    analyze_sox,
    generate_compliance_data,
    risk_band,
    summarize_logs,
)
from tokenvault.services.compliance.reports import (
    REPORT_JOB_NAME,
    ComplianceJobPayload,
    cleanup_expired_reports,
    create_compliance_report,
    fail_stale_reports,
    get_report,
    list_reports,
    process_compliance_report,
    read_report_artifact,
    report_view,
    retry_report,
    run_inline_report_job,
)
from tokenvault.services.compliance.storage import FileStore, LocalFileStore, get_file_store, set_file_store


__all__ = [
    "ANALYZERS",
    "REPORT_JOB_NAME",
    "ComplianceAnalysis",
    "ComplianceJobPayload",
    "FileStore",
    "LocalFileStore",
    "Violation",
    "analyze",
    "analyze_gdpr",
    "analyze_pci_dss",
    "analyze_sox",
    "cleanup_expired_reports",
    "create_compliance_report",
    "fail_stale_reports",
    "generate_compliance_data",
    "get_file_store",
    "get_report",
    "list_reports",
    "process_compliance_report",
    "read_report_artifact",
    "report_view",
    "retry_report",
    "risk_band",
    "run_inline_report_job",
    "set_file_store",
    "summarize_logs",
]
