"""Audit logging for authentication and account events.

Every sign-in attempt (password, wallet, passkey, refresh) is recorded on
success and on failure, along with credential and score changes.
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import Request

log = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """Structured audit event."""

    action: str  # e.g., "auth.success", "wallet.bind"
    principal: str = "anonymous"  # principal id or "anonymous"
    resource: str | None = None  # e.g., wallet address, passkey id
    status: str = "success"  # "success", "denied", "error"
    details: dict[str, Any] | None = None
    request_id: str | None = None  # Correlation ID
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditLogger:
    """Audit logger for identity operations.

    Logs events as structured JSON via the ``audit`` logger and keeps an
    in-memory ring buffer for recent event retrieval.
    """

    MAX_BUFFER_SIZE = 1000

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._buffer: deque[dict] = deque(maxlen=self.MAX_BUFFER_SIZE)

    def log(self, event: AuditEvent) -> None:
        """Write an audit event to the log and the ring buffer."""
        if not self.enabled:
            return

        self._buffer.append(asdict(event))

        extra = {
            "type": "audit",
            "principal": event.principal,
            "action": event.action,
            "status": event.status,
        }
        if event.resource:
            extra["resource"] = event.resource
        if event.request_id:
            extra["request_id"] = event.request_id
        if event.details:
            extra["details"] = event.details

        if event.status in ("denied", "error"):
            log.warning(f"audit: {event.action} {event.status}", extra=extra)
        else:
            log.info(f"audit: {event.action} {event.status}", extra=extra)

    def get_recent_events(
        self,
        limit: int = 100,
        action_filter: str | None = None,
        status_filter: str | None = None,
    ) -> list[dict]:
        """Get recent audit events, newest first.

        Args:
            limit: Max events to return
            action_filter: Filter by action prefix (e.g., "auth.")
            status_filter: Filter by status (e.g., "denied")
        """
        events = list(self._buffer)
        events.reverse()

        if action_filter:
            events = [e for e in events if e["action"].startswith(action_filter)]
        if status_filter:
            events = [e for e in events if e["status"] == status_filter]

        return events[:limit]

    def log_auth_success(
        self,
        principal_id: str,
        method: str,
        ip_address: str | None = None,
        request_id: str | None = None,
    ) -> None:
        """Log a successful sign-in via ``method`` (password, wallet, passkey, refresh)."""
        self.log(
            AuditEvent(
                action="auth.success",
                principal=principal_id,
                status="success",
                details={"method": method, "ip": ip_address},
                request_id=request_id,
            )
        )

    def log_auth_failure(
        self,
        method: str,
        reason: str = "invalid",
        subject: str | None = None,
        ip_address: str | None = None,
        request_id: str | None = None,
    ) -> None:
        """Log a failed sign-in. ``reason`` is recorded here and nowhere else."""
        self.log(
            AuditEvent(
                action="auth.failure",
                principal="anonymous",
                resource=subject,
                status="denied",
                details={"method": method, "reason": reason, "ip": ip_address},
                request_id=request_id,
            )
        )

    def log_access(
        self,
        action: str,
        principal_id: str,
        resource: str | None = None,
        status: str = "success",
        details: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        """Log an account event such as "wallet.bind" or "passkey.delete"."""
        self.log(
            AuditEvent(
                action=action,
                principal=principal_id,
                resource=resource,
                status=status,
                details=details,
                request_id=request_id,
            )
        )


def get_request_id(request: Request | None) -> str | None:
    """Extract request ID from request headers if available."""
    if request is None:
        return None

    for header in ("X-Request-ID", "X-Correlation-ID", "Request-Id"):
        if header in request.headers:
            return request.headers[header]

    return None
