from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.apps.api.deps import get_db, get_org_context
from opsdesk.apps.api.openapi import DECISION_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from opsdesk.domain.models import APPROVAL_STATUSES, RISK_LEVELS
from opsdesk.services import approvals as approvals_service
from opsdesk.services.approvals import MAX_REASON_LENGTH
from opsdesk.services.auth.context import OrgContext


router = APIRouter(prefix="/approvals", tags=["approvals"], responses=DEFAULT_ERROR_RESPONSES)

_STATUS_PATTERN = "^(all|" + "|".join(APPROVAL_STATUSES) + ")$"
_RISK_PATTERN = "^(all|" + "|".join(RISK_LEVELS) + ")$"


class ApproveRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=MAX_REASON_LENGTH)


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=MAX_REASON_LENGTH)


@router.get("")
async def list_approvals(
    status: str | None = Query(default=None, pattern=_STATUS_PATTERN),
    risk_level: str | None = Query(default=None, pattern=_RISK_PATTERN),
    limit: int = Query(default=100, ge=1, le=100),
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    approvals = await approvals_service.list_approvals(
        db, context, status=status, risk_level=risk_level, limit=limit
    )
    return {"items": [approval.as_dict() for approval in approvals]}


@router.get("/pending-count")
async def pending_count(
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, int]:
    return {"count": await approvals_service.count_pending(db, context)}


@router.get("/{approval_id}")
async def get_approval(
    approval_id: str,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    approval = await approvals_service.get_approval(db, context, approval_id)
    return approval.as_dict()


# Decider role depends on the approval's risk level, so the gate runs inside the service.
@router.post("/{approval_id}/approve", responses=DECISION_ERROR_RESPONSES)
async def approve(
    approval_id: str,
    request: Request,
    payload: ApproveRequest | None = None,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    decision = await approvals_service.decide_approval(
        db,
        context,
        approval_id,
        "approve",
        reason=payload.reason if payload else None,
        request=request,
    )
    return decision.as_dict()


@router.post("/{approval_id}/reject", responses=DECISION_ERROR_RESPONSES)
async def reject(
    approval_id: str,
    payload: RejectRequest,
    request: Request,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    decision = await approvals_service.decide_approval(
        db,
        context,
        approval_id,
        "reject",
        reason=payload.reason,
        request=request,
    )
    return decision.as_dict()
