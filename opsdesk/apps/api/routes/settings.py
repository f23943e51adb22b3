from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.apps.api.deps import get_db, get_org_context, require_role
from opsdesk.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from opsdesk.services import org_settings as settings_service
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.org_settings import MAX_DAILY_SEND_LIMIT, MAX_SIGNATURE_LENGTH


router = APIRouter(prefix="/settings", tags=["settings"], responses=DEFAULT_ERROR_RESPONSES)


class AutoModeSettingsRequest(BaseModel):
    auto_draft_enabled: bool
    auto_send_enabled: bool
    auto_send_risk_threshold: str
    auto_send_allowed_domains: list[str] = Field(default_factory=list)
    auto_send_allowed_recipients: list[str] = Field(default_factory=list)
    daily_send_limit: int = Field(ge=0, le=MAX_DAILY_SEND_LIMIT)


class ApprovalSettingsRequest(BaseModel):
    require_approval_tools: list[str]
    min_confidence_threshold: str


class ContentSettingsRequest(BaseModel):
    default_tone: str
    signature_template: str | None = Field(default=None, max_length=MAX_SIGNATURE_LENGTH)


@router.get("")
async def read_settings(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await settings_service.get_org_settings(db, context)


@router.get("/usage")
async def get_usage(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await settings_service.get_usage_stats(db, context)


@router.put("/auto-mode")
async def update_auto_mode(
    payload: AutoModeSettingsRequest,
    request: Request,
    context: OrgContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await settings_service.update_auto_mode_settings(db, context, **payload.model_dump(), request=request)


@router.put("/approval")
async def update_approval(
    payload: ApprovalSettingsRequest,
    request: Request,
    context: OrgContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await settings_service.update_approval_settings(db, context, **payload.model_dump(), request=request)


@router.put("/content")
async def update_content(
    payload: ContentSettingsRequest,
    request: Request,
    context: OrgContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await settings_service.update_content_settings(db, context, **payload.model_dump(), request=request)
