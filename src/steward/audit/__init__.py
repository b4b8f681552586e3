"""
Audit module for Steward.

AuditLog writes one append-only record per terminal governance event.
"""

from steward.audit.log import AuditLog, AuditSink, InMemoryAuditSink

__all__ = ["AuditLog", "AuditSink", "InMemoryAuditSink"]
