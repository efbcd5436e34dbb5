"""Append-only audit trail."""

from specx.audit.log import AuditEvent, AuditFilter, AuditLog, InMemoryAuditSink, JsonlAuditSink

__all__ = [
    "AuditEvent",
    "AuditFilter",
    "AuditLog",
    "InMemoryAuditSink",
    "JsonlAuditSink",
]
