from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.apps.api.deps import get_db, get_org_context
from opsdesk.apps.api.openapi import AGENT_RUN_WRITE_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from opsdesk.services import agent_runs as agent_runs_service
from opsdesk.services.agent_runs import MAX_AGENT_TYPE_LENGTH, MAX_ERROR_LENGTH
from opsdesk.services.auth.context import OrgContext


router = APIRouter(prefix="/agent-runs", tags=["agent-runs"], responses=DEFAULT_ERROR_RESPONSES)


class AgentRunCreateRequest(BaseModel):
    agent_type: str = Field(min_length=1, max_length=MAX_AGENT_TYPE_LENGTH)
    input: dict[str, Any] = Field(default_factory=dict)


class AgentRunStatusRequest(BaseModel):
    status: str
    error: str | None = Field(default=None, max_length=MAX_ERROR_LENGTH)


@router.get("")
async def list_agent_runs(
    status: str | None = None,
    agent_type: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await agent_runs_service.list_agent_runs(
        db, context, status=status, agent_type=agent_type, page=page, limit=limit
    )


@router.get("/{agent_run_id}")
async def get_agent_run(
    agent_run_id: str,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await agent_runs_service.get_agent_run(db, context, agent_run_id)


@router.post("", status_code=201, responses=AGENT_RUN_WRITE_ERROR_RESPONSES)
async def create_agent_run(
    payload: AgentRunCreateRequest,
    request: Request,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await agent_runs_service.create_agent_run(
        db, context, agent_type=payload.agent_type, input=payload.input, request=request
    )


@router.patch("/{agent_run_id}/status", responses=AGENT_RUN_WRITE_ERROR_RESPONSES)
async def update_agent_run_status(
    agent_run_id: str,
    payload: AgentRunStatusRequest,
    request: Request,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await agent_runs_service.update_agent_run_status(
        db, context, agent_run_id, status=payload.status, error=payload.error, request=request
    )


# Admin-only; the role gate runs inside the service.
@router.delete("/{agent_run_id}", responses=AGENT_RUN_WRITE_ERROR_RESPONSES)
async def delete_agent_run(
    agent_run_id: str,
    request: Request,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return await agent_runs_service.delete_agent_run(db, context, agent_run_id, request=request)
