from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from opsdesk.apps.api.errors import (
    http_exception_handler,
    ops_error_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from opsdesk.apps.api.response import API_VERSION, envelope, is_enveloped, uses_envelope
from opsdesk.apps.api.routes.agent_runs import router as agent_runs_router
from opsdesk.apps.api.routes.approvals import router as approvals_router
from opsdesk.apps.api.routes.audit import router as audit_router
from opsdesk.apps.api.routes.emails import router as emails_router
from opsdesk.apps.api.routes.health import router as health_router
from opsdesk.apps.api.routes.org import router as org_router
from opsdesk.apps.api.routes.settings import router as settings_router
from opsdesk.apps.api.routes.webhooks import router as webhooks_router
from opsdesk.core.config import get_settings
from opsdesk.core.errors import OpsError
from opsdesk.core.logging import configure_logging
from opsdesk.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title="OpsDesk API",
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        # Wrap versioned JSON responses in the standardized success envelope.
        content_type = response.headers.get("content-type", "")
        if (
            uses_envelope(request)
            and response.status_code < 400
            and content_type.startswith("application/json")
        ):
            # call_next hands back a streamed response; buffer it to rewrite the body.
            raw_body = b"".join([chunk async for chunk in response.body_iterator])
            try:
                payload = json.loads(raw_body) if raw_body else None
            except (TypeError, ValueError):
                payload = None
            if payload is not None and not is_enveloped(payload):
                wrapped_response = JSONResponse(
                    content=envelope(request_id=request_id, data=payload),
                    status_code=response.status_code,
                )
                for key, value in response.headers.items():
                    if key.lower() in {"content-length", "content-type"}:
                        continue
                    wrapped_response.headers[key] = value
                response = wrapped_response
            else:
                response = Response(
                    content=raw_body,
                    status_code=response.status_code,
                    headers=dict(response.headers),
                )

        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(OpsError)
    async def _ops_error_handler(request: Request, exc: OpsError):
        return await ops_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(org_router, prefix=f"/{API_VERSION}")
    app.include_router(settings_router, prefix=f"/{API_VERSION}")
    app.include_router(approvals_router, prefix=f"/{API_VERSION}")
    app.include_router(agent_runs_router, prefix=f"/{API_VERSION}")
    app.include_router(emails_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    # Provider callbacks bypass session auth and the success envelope.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into the schema for session-authenticated routes.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="OpsDesk API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health" or path.startswith(f"/{API_VERSION}/webhooks"):
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    logger.info("app_created name=%s", settings.app_name)
    return app


app = create_app()
