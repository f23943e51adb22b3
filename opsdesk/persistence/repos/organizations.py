from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.domain.models import Organization, Profile
from opsdesk.persistence.guards import require_org_id


async def get_organization(session: AsyncSession, organization_id: str) -> Organization | None:
    require_org_id(organization_id)
    return await session.get(Organization, organization_id)


async def get_profile(session: AsyncSession, profile_id: str) -> Profile | None:
    return await session.get(Profile, profile_id)


async def get_member_profile(
    session: AsyncSession,
    *,
    profile_id: str,
    organization_id: str,
) -> Profile | None:
    # Membership is always verified in the database; never trust a client-supplied org id.
    require_org_id(organization_id)
    result = await session.execute(
        select(Profile).where(Profile.id == profile_id, Profile.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


async def get_by_stripe_customer(session: AsyncSession, customer_id: str) -> Organization | None:
    result = await session.execute(
        select(Organization).where(Organization.stripe_customer_id == customer_id)
    )
    return result.scalars().first()


async def get_by_stripe_subscription(session: AsyncSession, subscription_id: str) -> Organization | None:
    result = await session.execute(
        select(Organization).where(Organization.stripe_subscription_id == subscription_id)
    )
    return result.scalars().first()


async def list_memberships(session: AsyncSession, profile_id: str) -> list[tuple[Profile, Organization]]:
    # Keyed on the authenticated subject only; no organization predicate applies.
    result = await session.execute(
        select(Profile, Organization)
        .join(Organization, Organization.id == Profile.organization_id)
        .where(Profile.id == profile_id)
        .order_by(Organization.name, Organization.id)
    )
    return [(row[0], row[1]) for row in result.all()]
