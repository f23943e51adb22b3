from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.apps.api.deps import get_db, get_org_context, require_role
from opsdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsdesk.core.config import get_settings
from opsdesk.domain.models import AuditLog
from opsdesk.domain.types import utc_now
from opsdesk.persistence.repos import audit as audit_repo
from opsdesk.services.auth.context import OrgContext


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditLogResponse(BaseModel):
    id: int
    actor_id: str
    action: str
    resource_type: str
    resource_id: str | None
    metadata: dict[str, Any] | None
    ip_address: str | None
    user_agent: str | None
    created_at: str


class AuditLogsPage(BaseModel):
    items: list[AuditLogResponse]
    total: int
    page: int
    limit: int


def _to_response(entry: AuditLog) -> AuditLogResponse:
    # Serialize audit datetimes to ISO 8601 for API clients.
    return AuditLogResponse(
        id=entry.id,
        actor_id=entry.actor_id,
        action=entry.action,
        resource_type=entry.resource_type,
        resource_id=entry.resource_id,
        metadata=entry.metadata_json,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        created_at=entry.created_at.isoformat(),
    )


@router.get("/logs")
async def list_audit_logs(
    action: str | None = None,
    resource_type: str | None = None,
    actor_id: str | None = None,
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> AuditLogsPage:
    # Scope is always the caller's organization; there is no cross-org filter.
    entries, total = await audit_repo.list_logs(
        db,
        organization_id=context.organization_id,
        action=action,
        resource_type=resource_type,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        offset=(page - 1) * limit,
        limit=limit,
    )
    return AuditLogsPage(items=[_to_response(entry) for entry in entries], total=total, page=page, limit=limit)


@router.get("/resource-types")
async def list_resource_types(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> list[str]:
    return await audit_repo.distinct_values(db, organization_id=context.organization_id, column="resource_type")


@router.get("/actions")
async def list_actions(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> list[str]:
    return await audit_repo.distinct_values(db, organization_id=context.organization_id, column="action")


@router.get("/export")
async def export_audit_logs(
    action: str | None = None,
    resource_type: str | None = None,
    actor_id: str | None = None,
    date_from: datetime | None = Query(default=None, alias="from"),
    date_to: datetime | None = Query(default=None, alias="to"),
    context: OrgContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    max_rows = get_settings().audit_export_max_rows
    entries, total = await audit_repo.list_logs(
        db,
        organization_id=context.organization_id,
        action=action,
        resource_type=resource_type,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
        offset=0,
        limit=max_rows,
    )
    return {
        "exported_at": utc_now().isoformat(),
        "organization_id": context.organization_id,
        "total": total,
        "truncated": total > len(entries),
        "items": [_to_response(entry).model_dump() for entry in entries],
    }
