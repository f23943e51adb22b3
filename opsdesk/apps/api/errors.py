from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsdesk.apps.api.response import error_response, uses_envelope
from opsdesk.core.errors import OpsError
from opsdesk.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _plain_error(code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Envelope-exempt routes (health, webhooks) still get a stable error shape.
    payload: dict[str, Any] = {"error": {"code": code, "message": message}}
    if details:
        payload["error"]["details"] = details
    return payload


def _render(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    if uses_envelope(request):
        payload = error_response(request=request, code=code, message=message, details=details)
    else:
        payload = _plain_error(code, message, details)
    return JSONResponse(content=jsonable_encoder(payload), status_code=status_code, headers=headers)


async def ops_error_handler(request: Request, exc: OpsError) -> JSONResponse:
    # Domain errors carry their own code and status; messages are written for clients.
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return _render(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
        headers=headers,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Ensure Starlette-raised exceptions (404 on unknown paths, 405) are wrapped consistently.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Per-field messages keyed by dotted location, e.g. {"body.reason": "..."}.
    errors: dict[str, str] = {}
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        errors[location or "request"] = str(error.get("msg", "Invalid value"))
    return _render(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"errors": errors},
    )


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    logger.error("tenant_predicate_missing path=%s", request.url.path)
    return _render(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.error("unhandled_error path=%s", request.url.path, exc_info=exc)
    return _render(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
