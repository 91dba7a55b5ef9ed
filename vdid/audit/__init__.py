"""Audit logging module for VDID."""

from vdid.audit.logger import AuditEvent, AuditLogger, get_request_id

__all__ = [
    "AuditLogger",
    "AuditEvent",
    "get_request_id",
]
