from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.apps.api.deps import get_db, get_org_context
from opsdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.email import inbox


router = APIRouter(prefix="/emails", tags=["emails"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("")
async def list_emails(
    status: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await inbox.list_emails(db, context, status=status, page=page, limit=limit)


@router.get("/stats")
async def email_stats(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, int]:
    return await inbox.email_stats(db, context)


@router.get("/alias")
async def get_alias(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await inbox.get_or_create_alias(db, context)


# Admin gates for the two writes below run inside the service via run_gated.
@router.post("/alias/regenerate")
async def regenerate_alias(
    request: Request,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await inbox.regenerate_alias(db, context, request=request)


@router.get("/{email_id}")
async def get_email(
    email_id: str,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await inbox.get_email(db, context, email_id)


@router.post("/{email_id}/retry")
async def retry_email(
    email_id: str,
    request: Request,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await inbox.retry_processing(db, context, email_id, request=request)
