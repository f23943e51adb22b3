from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.core.errors import ConflictError, NotFoundError, QuotaExceededError, ValidationError
from opsdesk.domain.models import AGENT_RUN_STATUSES, AgentRun
from opsdesk.domain.types import utc_now
from opsdesk.persistence.repos import agent_runs as agent_runs_repo
from opsdesk.services.audit import record_event
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.auth.roles import Role, run_gated
from opsdesk.services.org_settings import daily_limits, start_of_day


logger = logging.getLogger(__name__)

MAX_AGENT_TYPE_LENGTH = 64
MAX_ERROR_LENGTH = 2000
# Statuses a person may set; the rest belong to the approval workflow.
MANUAL_STATUSES = ("pending", "running", "completed", "failed")
APPROVAL_HELD_STATUSES = ("awaiting_approval",)


def agent_run_view(run: AgentRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "agent_type": run.agent_type,
        "status": run.status,
        "input": run.input,
        "output": run.output,
        "error": run.error,
        "created_by": run.created_by,
        "created_at": run.created_at.isoformat() if run.created_at else None,
    }


async def list_agent_runs(
    session: AsyncSession,
    context: OrgContext,
    *,
    status: str | None = None,
    agent_type: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict[str, Any]:
    if status in ("", "all"):
        status = None
    if status is not None and status not in AGENT_RUN_STATUSES:
        raise ValidationError("Invalid status filter", errors={"status": f"Unknown status: {status}"})
    runs, total = await agent_runs_repo.list_agent_runs(
        session,
        organization_id=context.organization_id,
        status=status,
        agent_type=agent_type or None,
        offset=(max(page, 1) - 1) * limit,
        limit=limit,
    )
    return {"items": [agent_run_view(run) for run in runs], "total": total, "page": page, "limit": limit}


async def get_agent_run(session: AsyncSession, context: OrgContext, agent_run_id: str) -> dict[str, Any]:
    run = await agent_runs_repo.get_agent_run(
        session, organization_id=context.organization_id, agent_run_id=agent_run_id
    )
    if run is None:
        raise NotFoundError("Agent run not found")
    return agent_run_view(run)


def _clean_agent_type(agent_type: str) -> str:
    cleaned = agent_type.strip() if isinstance(agent_type, str) else ""
    if not cleaned or len(cleaned) > MAX_AGENT_TYPE_LENGTH:
        raise ValidationError(
            "Invalid agent run",
            errors={"agent_type": f"Agent type must be 1 to {MAX_AGENT_TYPE_LENGTH} characters"},
        )
    return cleaned


async def create_agent_run(
    session: AsyncSession,
    context: OrgContext,
    *,
    agent_type: str,
    input: dict[str, Any] | None = None,
    request: Request | None = None,
) -> dict[str, Any]:
    async def _create() -> dict[str, Any]:
        cleaned_type = _clean_agent_type(agent_type)
        limits = await daily_limits(session, context.organization_id)
        used = await agent_runs_repo.count_runs_since(
            session, organization_id=context.organization_id, since=start_of_day(utc_now())
        )
        if used >= limits["runs"]:
            logger.warning(
                "agent_run_quota_exceeded organization_id=%s limit=%s used=%s",
                context.organization_id,
                limits["runs"],
                used,
            )
            raise QuotaExceededError("Daily run limit reached", details={"limit": limits["runs"], "used": used})
        run = await agent_runs_repo.create_agent_run(
            session,
            organization_id=context.organization_id,
            agent_type=cleaned_type,
            input=dict(input or {}),
            created_by=context.actor_id,
        )
        view = agent_run_view(run)
        await session.commit()
        logger.info(
            "agent_run_created organization_id=%s agent_run_id=%s agent_type=%s",
            context.organization_id,
            run.id,
            cleaned_type,
        )
        await record_event(
            organization_id=context.organization_id,
            actor_id=context.actor_id,
            action="agent_run.created",
            resource_type="agent_run",
            resource_id=run.id,
            metadata={"agent_type": cleaned_type},
            request=request,
        )
        return view

    return await run_gated(context, Role.MEMBER, _create)


def _validate_status(status: str, error: str | None) -> str | None:
    errors: dict[str, str] = {}
    if status not in AGENT_RUN_STATUSES:
        errors["status"] = f"Unknown status: {status}"
    elif status not in MANUAL_STATUSES:
        errors["status"] = "Status is set by the approval workflow"
    cleaned = error.strip() if isinstance(error, str) else None
    if cleaned and status != "failed":
        errors["error"] = "Error is only recorded for failed runs"
    elif cleaned and len(cleaned) > MAX_ERROR_LENGTH:
        errors["error"] = f"Error must be at most {MAX_ERROR_LENGTH} characters"
    if errors:
        raise ValidationError("Invalid status update", errors=errors)
    return cleaned or None


async def update_agent_run_status(
    session: AsyncSession,
    context: OrgContext,
    agent_run_id: str,
    *,
    status: str,
    error: str | None = None,
    request: Request | None = None,
) -> dict[str, Any]:
    async def _update() -> dict[str, Any]:
        cleaned_error = _validate_status(status, error)
        run = await agent_runs_repo.get_agent_run(
            session, organization_id=context.organization_id, agent_run_id=agent_run_id
        )
        if run is None:
            raise NotFoundError("Agent run not found")
        previous = run.status
        updated = await agent_runs_repo.set_status_unless(
            session,
            organization_id=context.organization_id,
            agent_run_id=agent_run_id,
            values={"status": status, "error": cleaned_error},
            blocked_statuses=APPROVAL_HELD_STATUSES,
        )
        if not updated:
            await session.rollback()
            raise ConflictError("Agent run is awaiting approval", details={"status": previous})
        refreshed = await agent_runs_repo.get_agent_run(
            session, organization_id=context.organization_id, agent_run_id=agent_run_id
        )
        if refreshed is None:
            await session.rollback()
            raise NotFoundError("Agent run not found")
        view = agent_run_view(refreshed)
        await session.commit()
        logger.info(
            "agent_run_status_updated organization_id=%s agent_run_id=%s status=%s",
            context.organization_id,
            agent_run_id,
            status,
        )
        await record_event(
            organization_id=context.organization_id,
            actor_id=context.actor_id,
            action="agent_run.status_updated",
            resource_type="agent_run",
            resource_id=agent_run_id,
            metadata={"previous_status": previous, "status": status},
            request=request,
        )
        return view

    return await run_gated(context, Role.MEMBER, _update)


async def delete_agent_run(
    session: AsyncSession,
    context: OrgContext,
    agent_run_id: str,
    *,
    request: Request | None = None,
) -> dict[str, Any]:
    # Runs that went through approval stay as the record behind the decision.
    async def _delete() -> dict[str, Any]:
        run = await agent_runs_repo.get_agent_run(
            session, organization_id=context.organization_id, agent_run_id=agent_run_id
        )
        if run is None:
            raise NotFoundError("Agent run not found")
        agent_type, status = run.agent_type, run.status
        deleted = await agent_runs_repo.delete_agent_run(
            session, organization_id=context.organization_id, agent_run_id=agent_run_id
        )
        if not deleted:
            await session.rollback()
            raise ConflictError("Agent run has an approval and cannot be deleted", details={"status": status})
        await session.commit()
        logger.info(
            "agent_run_deleted organization_id=%s agent_run_id=%s actor_id=%s",
            context.organization_id,
            agent_run_id,
            context.actor_id,
        )
        await record_event(
            organization_id=context.organization_id,
            actor_id=context.actor_id,
            action="agent_run.deleted",
            resource_type="agent_run",
            resource_id=agent_run_id,
            metadata={"agent_type": agent_type, "status": status},
            request=request,
        )
        return {"id": agent_run_id, "deleted": True}

    return await run_gated(context, Role.ADMIN, _delete)
