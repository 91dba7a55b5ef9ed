"""VDID exception hierarchy.

Every error raised by the identity core derives from VDIDError and carries
the HTTP status and machine-readable code the API layer renders.
"""

from typing import Any


class VDIDError(Exception):
    """Base exception for all VDID errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, details: Any = None):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(VDIDError):
    """Malformed input (email, address, password shape).

    ``details`` maps field names to the list of problems found.
    """

    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Validation failed"

    def __init__(
        self,
        message: str | None = None,
        field: str | None = None,
        errors: list[str] | None = None,
    ):
        details = None
        if field is not None:
            details = {field: errors or [message or self.default_message]}
        super().__init__(message, details)
        self.field = field


class AuthenticationError(VDIDError):
    """Credential check failed.

    The message is deliberately generic so callers cannot tell which factor
    failed; the concrete reason goes to the audit log only.
    """

    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication failed"

    def __init__(self, message: str | None = None, reason: str = "invalid"):
        super().__init__(message)
        self.reason = reason


class ForbiddenError(VDIDError):
    """Caller is authenticated but may not perform the operation."""

    status_code = 403
    code = "FORBIDDEN"
    default_message = "Forbidden"


class NotFoundError(VDIDError):
    """Unknown session, user or credential."""

    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(VDIDError):
    """Duplicate email/wallet/credential, or removing the last auth method."""

    status_code = 409
    code = "CONFLICT"
    default_message = "Resource conflict"


class InternalError(VDIDError):
    """Storage or other infrastructure failure."""
