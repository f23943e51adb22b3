from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.domain.models import AgentRun, Approval, InboundEmail
from opsdesk.persistence.guards import tenant_predicate


async def create_agent_run(
    session: AsyncSession,
    *,
    organization_id: str,
    agent_type: str,
    input: dict[str, Any],
    created_by: str | None,
    status: str = "pending",
) -> AgentRun:
    run = AgentRun(
        organization_id=organization_id,
        agent_type=agent_type,
        input=input,
        status=status,
        created_by=created_by,
    )
    session.add(run)
    await session.flush()
    return run


async def list_agent_runs(
    session: AsyncSession,
    *,
    organization_id: str,
    status: str | None = None,
    agent_type: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[AgentRun], int]:
    filters = [tenant_predicate(AgentRun, organization_id)]
    if status:
        filters.append(AgentRun.status == status)
    if agent_type:
        filters.append(AgentRun.agent_type == agent_type)
    total = await session.execute(select(func.count()).select_from(AgentRun).where(*filters))
    result = await session.execute(
        select(AgentRun)
        .where(*filters)
        .order_by(AgentRun.created_at.desc(), AgentRun.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total.scalar() or 0)


async def get_agent_run(
    session: AsyncSession,
    *,
    organization_id: str,
    agent_run_id: str,
) -> AgentRun | None:
    result = await session.execute(
        select(AgentRun)
        .where(AgentRun.id == agent_run_id, tenant_predicate(AgentRun, organization_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def count_runs_since(session: AsyncSession, *, organization_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(AgentRun)
        .where(tenant_predicate(AgentRun, organization_id), AgentRun.created_at >= since)
    )
    return int(result.scalar() or 0)


async def set_status_unless(
    session: AsyncSession,
    *,
    organization_id: str,
    agent_run_id: str,
    values: dict[str, Any],
    blocked_statuses: tuple[str, ...],
) -> bool:
    # Conditional update; runs held by the approval workflow are never moved by hand.
    result = await session.execute(
        update(AgentRun)
        .where(
            AgentRun.id == agent_run_id,
            tenant_predicate(AgentRun, organization_id),
            AgentRun.status.not_in(blocked_statuses),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def delete_agent_run(session: AsyncSession, *, organization_id: str, agent_run_id: str) -> bool:
    # Emails keep their history but lose the link; runs with an approval are kept.
    await session.execute(
        update(InboundEmail)
        .where(InboundEmail.agent_run_id == agent_run_id, tenant_predicate(InboundEmail, organization_id))
        .values(agent_run_id=None)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(
        delete(AgentRun)
        .where(
            AgentRun.id == agent_run_id,
            tenant_predicate(AgentRun, organization_id),
            ~exists().where(Approval.agent_run_id == agent_run_id),
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
