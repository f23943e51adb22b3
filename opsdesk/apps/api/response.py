from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"

# Health checks and provider webhooks answer with their own fixed shapes.
ENVELOPE_EXEMPT_PREFIXES = (
    f"/{API_VERSION}/health",
    f"/{API_VERSION}/webhooks",
    f"/{API_VERSION}/openapi.json",
    f"/{API_VERSION}/docs",
)


class ResponseMeta(BaseModel):
    # Include request/version metadata for consistent client tracing.
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def uses_envelope(request: Request) -> bool:
    return is_versioned_request(request) and not request.url.path.startswith(ENVELOPE_EXEMPT_PREFIXES)


def envelope(*, request_id: str, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": ResponseMeta(request_id=request_id).model_dump()}


def is_enveloped(payload: Any) -> bool:
    return (
        isinstance(payload, dict)
        and "data" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Return the standard error envelope with request metadata.
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
