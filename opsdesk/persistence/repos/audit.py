from __future__ import annotations

from datetime import datetime

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.domain.models import AuditLog
from opsdesk.persistence.guards import tenant_predicate


def _filters(
    *,
    organization_id: str,
    action: str | None,
    resource_type: str | None,
    actor_id: str | None,
    date_from: datetime | None,
    date_to: datetime | None,
) -> list:
    # Scope all audit queries to an organization to prevent cross-tenant leakage.
    filters = [tenant_predicate(AuditLog, organization_id)]
    if action:
        filters.append(AuditLog.action.ilike(f"%{action}%"))
    if resource_type:
        filters.append(AuditLog.resource_type == resource_type)
    if actor_id:
        filters.append(AuditLog.actor_id == actor_id)
    if date_from:
        filters.append(AuditLog.created_at >= date_from)
    if date_to:
        filters.append(AuditLog.created_at <= date_to)
    return filters


async def list_logs(
    session: AsyncSession,
    *,
    organization_id: str,
    action: str | None = None,
    resource_type: str | None = None,
    actor_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[AuditLog], int]:
    filters = _filters(
        organization_id=organization_id,
        action=action,
        resource_type=resource_type,
        actor_id=actor_id,
        date_from=date_from,
        date_to=date_to,
    )
    total = await session.execute(select(func.count()).select_from(AuditLog).where(*filters))
    result = await session.execute(
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total.scalar() or 0)


async def distinct_values(session: AsyncSession, *, organization_id: str, column: str) -> list[str]:
    field = getattr(AuditLog, column)
    result = await session.execute(
        select(distinct(field)).where(tenant_predicate(AuditLog, organization_id), field.is_not(None))
    )
    return sorted(value for value in result.scalars().all() if value)


async def count_actions_since(
    session: AsyncSession,
    *,
    organization_id: str,
    action: str,
    since: datetime,
) -> int:
    # Exact action match; list filters use substring matching instead.
    result = await session.execute(
        select(func.count())
        .select_from(AuditLog)
        .where(
            tenant_predicate(AuditLog, organization_id),
            AuditLog.action == action,
            AuditLog.created_at >= since,
        )
    )
    return int(result.scalar() or 0)
