from __future__ import annotations

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from opsdesk.domain.types import utc_now
from opsdesk.persistence.db import check_database


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

# Database round-trips slower than this still answer 200 but report degraded.
DEGRADED_LATENCY_MS = 1000.0


class DatabaseCheck(BaseModel):
    status: str
    latency_ms: float | None = None


class HealthChecks(BaseModel):
    database: DatabaseCheck


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    checks: HealthChecks


def overall_status(database_up: bool, latency_ms: float | None) -> str:
    if not database_up:
        return "unhealthy"
    if latency_ms is not None and latency_ms > DEGRADED_LATENCY_MS:
        return "degraded"
    return "healthy"


# Served unwrapped so load balancers can read the status directly.
@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse, "description": "Unhealthy"}},
)
async def health() -> JSONResponse:
    database_up, latency_ms = await check_database()
    status = overall_status(database_up, latency_ms)
    if status != "healthy":
        logger.warning("health_check status=%s database_up=%s latency_ms=%s", status, database_up, latency_ms)
    database = DatabaseCheck(status="up" if database_up else "down", latency_ms=latency_ms)
    payload = HealthResponse(
        status=status,
        timestamp=utc_now().isoformat(),
        checks=HealthChecks(database=database),
    )
    return JSONResponse(
        content=payload.model_dump(exclude_none=True),
        status_code=503 if status == "unhealthy" else 200,
        headers={"Cache-Control": "no-store"},
    )
