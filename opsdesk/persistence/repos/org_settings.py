from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.domain.models import OrgSettings
from opsdesk.persistence.guards import tenant_predicate


async def get_org_settings(session: AsyncSession, *, organization_id: str) -> OrgSettings | None:
    result = await session.execute(
        select(OrgSettings)
        .where(tenant_predicate(OrgSettings, organization_id))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_org_settings(
    session: AsyncSession,
    *,
    organization_id: str,
    values: dict[str, Any],
) -> OrgSettings:
    # Unique organization_id settles concurrent first writes; the loser updates the winner's row.
    existing = await get_org_settings(session, organization_id=organization_id)
    if existing is None:
        row = OrgSettings(organization_id=organization_id, **values)
        try:
            async with session.begin_nested():
                session.add(row)
                await session.flush()
            return row
        except IntegrityError:
            existing = await get_org_settings(session, organization_id=organization_id)
            if existing is None:
                raise
    for key, value in values.items():
        setattr(existing, key, value)
    await session.flush()
    return existing
