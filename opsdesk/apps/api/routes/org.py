from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.apps.api.deps import get_db, get_org_context, require_role
from opsdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsdesk.services import organizations as org_service
from opsdesk.services.auth.context import OrgContext


router = APIRouter(prefix="/org", tags=["organization"], responses=DEFAULT_ERROR_RESPONSES)


class OrganizationUpdateRequest(BaseModel):
    name: str


@router.get("/context")
async def get_context(context: OrgContext = Depends(get_org_context)) -> dict[str, Any]:
    return context.as_dict()


@router.get("")
async def get_organization(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await org_service.get_organization(db, context)


@router.patch("")
async def update_organization(
    payload: OrganizationUpdateRequest,
    request: Request,
    context: OrgContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await org_service.update_organization(db, context, name=payload.name, request=request)


@router.get("/memberships")
async def list_memberships(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await org_service.list_memberships(db, context)
