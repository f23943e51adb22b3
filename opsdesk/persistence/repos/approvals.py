from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.domain.models import AgentRun, Approval
from opsdesk.persistence.guards import tenant_predicate


def _not_expired(now: datetime):
    return or_(Approval.expires_at.is_(None), Approval.expires_at > now)


async def list_approvals(
    session: AsyncSession,
    *,
    organization_id: str,
    status: str | None = None,
    risk_level: str | None = None,
    now: datetime,
    limit: int = 100,
) -> list[tuple[Approval, AgentRun | None]]:
    # Filter on effective status so lazily expired rows never show up as pending.
    stmt = (
        select(Approval, AgentRun)
        .outerjoin(AgentRun, AgentRun.id == Approval.agent_run_id)
        .where(tenant_predicate(Approval, organization_id))
    )
    if status == "pending":
        stmt = stmt.where(Approval.status == "pending", _not_expired(now))
    elif status == "expired":
        stmt = stmt.where(
            or_(
                Approval.status == "expired",
                and_(Approval.status == "pending", Approval.expires_at <= now),
            )
        )
    elif status:
        stmt = stmt.where(Approval.status == status)
    if risk_level:
        stmt = stmt.where(Approval.risk_level == risk_level)
    stmt = stmt.order_by(Approval.created_at.desc(), Approval.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def get_approval(
    session: AsyncSession,
    *,
    organization_id: str,
    approval_id: str,
) -> tuple[Approval, AgentRun | None] | None:
    result = await session.execute(
        select(Approval, AgentRun)
        .outerjoin(AgentRun, AgentRun.id == Approval.agent_run_id)
        .where(Approval.id == approval_id, tenant_predicate(Approval, organization_id))
        .execution_options(populate_existing=True)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def count_pending(session: AsyncSession, *, organization_id: str, now: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(Approval)
        .where(tenant_predicate(Approval, organization_id), Approval.status == "pending", _not_expired(now))
    )
    return int(result.scalar() or 0)


async def transition_pending(
    session: AsyncSession,
    *,
    organization_id: str,
    approval_id: str,
    values: dict[str, Any],
    now: datetime,
) -> bool:
    # Conditional update: only a still-pending, unexpired row can move; first writer wins.
    result = await session.execute(
        update(Approval)
        .where(
            Approval.id == approval_id,
            tenant_predicate(Approval, organization_id),
            Approval.status == "pending",
            _not_expired(now),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def mark_expired(
    session: AsyncSession,
    *,
    now: datetime,
    organization_id: str | None = None,
    approval_id: str | None = None,
) -> int:
    # Persist lazy expiry; decided_at records when the expiry was observed.
    stmt = update(Approval).where(Approval.status == "pending", Approval.expires_at <= now)
    if organization_id is not None:
        stmt = stmt.where(tenant_predicate(Approval, organization_id))
    if approval_id is not None:
        stmt = stmt.where(Approval.id == approval_id)
    result = await session.execute(
        stmt.values(status="expired", decided_at=now).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def set_agent_run_status(
    session: AsyncSession,
    *,
    organization_id: str,
    agent_run_id: str,
    status: str,
    error: str | None = None,
) -> None:
    values: dict[str, Any] = {"status": status}
    if error is not None:
        values["error"] = error
    await session.execute(
        update(AgentRun)
        .where(AgentRun.id == agent_run_id, tenant_predicate(AgentRun, organization_id))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
