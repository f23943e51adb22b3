from __future__ import annotations

from typing import Any


class OpsError(Exception):
    """Base error for OpsDesk; carries a stable code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Request failed"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ValidationError(OpsError):
    """Malformed input; details carry per-field messages."""

    code = "VALIDATION_ERROR"
    status_code = 422
    default_message = "Validation error"

    def __init__(self, message: str | None = None, *, errors: dict[str, str] | None = None) -> None:
        super().__init__(message, details={"errors": errors} if errors else None)
        self.errors = errors or {}


class AuthorizationError(OpsError):
    """Insufficient role; the message never describes the policy."""

    code = "AUTH_FORBIDDEN"
    status_code = 403
    default_message = "Insufficient permissions"


class AuthenticationError(OpsError):
    """Missing, malformed or expired credentials."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class NotFoundError(OpsError):
    """Resource absent or outside the caller's organization."""

    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ConflictError(OpsError):
    """State transition attempted from the wrong state."""

    code = "CONFLICT"
    status_code = 409
    default_message = "Conflicting state"


class QuotaExceededError(OpsError):
    """Daily organization limit reached; retry after the UTC day rolls over."""

    code = "QUOTA_EXCEEDED"
    status_code = 429
    default_message = "Daily limit reached"


class ExternalServiceError(OpsError):
    """Upstream provider failure."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502
    default_message = "Upstream service error"


class WebhookVerificationError(ExternalServiceError):
    """Inbound webhook signature missing or invalid; fail closed."""

    code = "WEBHOOK_SIGNATURE_INVALID"
    status_code = 401
    default_message = "Invalid signature"


class BillingEventError(OpsError):
    """Billing event cannot be applied; retrying will not help."""

    code = "BILLING_EVENT_UNPROCESSABLE"
    status_code = 200


class DatabaseError(OpsError):
    """Database layer failure."""

    code = "DATABASE_ERROR"
    status_code = 503
    default_message = "Database unavailable"


class AuditLogImmutableError(RuntimeError):
    """Raised when code attempts to update or delete an audit row."""
