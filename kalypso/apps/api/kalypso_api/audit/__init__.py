"""Append-only audit trail."""

from kalypso_api.audit.sinks import (
    AuditRecord,
    AuditSink,
    DatabaseAuditSink,
    FailingAuditSink,
    LoggingAuditSink,
    write_audit,
)

__all__ = [
    "AuditRecord",
    "AuditSink",
    "DatabaseAuditSink",
    "FailingAuditSink",
    "LoggingAuditSink",
    "write_audit",
]
