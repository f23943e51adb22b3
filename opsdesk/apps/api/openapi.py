from __future__ import annotations

from typing import Any

from opsdesk.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient permissions"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"errors": {"reason": "Rejection reason is required"}},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
}

DECISION_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    409: _response(
        "Conflict",
        code="CONFLICT",
        message="Approval already rejected",
        details={"status": "rejected"},
    ),
}

AGENT_RUN_WRITE_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    409: _response(
        "Conflict",
        code="CONFLICT",
        message="Agent run is awaiting approval",
        details={"status": "awaiting_approval"},
    ),
    429: _response(
        "Daily limit reached",
        code="QUOTA_EXCEEDED",
        message="Daily run limit reached",
        details={"limit": 100, "used": 100},
    ),
}
