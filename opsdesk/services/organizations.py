from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.core.errors import NotFoundError, ValidationError
from opsdesk.domain.models import Organization
from opsdesk.persistence.repos import organizations as org_repo
from opsdesk.services.audit import record_event
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.auth.roles import Role, run_gated


logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100


def organization_view(organization: Organization) -> dict[str, Any]:
    # Billing fields are read-only here; only verified billing events write them.
    return {
        "id": organization.id,
        "name": organization.name,
        "plan": organization.plan,
        "plan_limits": organization.plan_limits,
        "subscription_status": organization.subscription_status,
        "subscription_period_end": (
            organization.subscription_period_end.isoformat() if organization.subscription_period_end else None
        ),
        "billing_email": organization.billing_email,
        "created_at": organization.created_at.isoformat() if organization.created_at else None,
    }


async def _load(session: AsyncSession, context: OrgContext) -> Organization:
    organization = await org_repo.get_organization(session, context.organization_id)
    if organization is None:
        raise NotFoundError("Organization not found")
    return organization


async def get_organization(session: AsyncSession, context: OrgContext) -> dict[str, Any]:
    return organization_view(await _load(session, context))


def _validate_name(name: Any) -> str:
    cleaned = name.strip() if isinstance(name, str) else ""
    if not cleaned:
        raise ValidationError("Invalid organization", errors={"name": "Name is required"})
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValidationError(
            "Invalid organization",
            errors={"name": f"Name must be at most {MAX_NAME_LENGTH} characters"},
        )
    return cleaned


async def update_organization(
    session: AsyncSession,
    context: OrgContext,
    *,
    name: Any,
    request: Request | None = None,
) -> dict[str, Any]:
    async def _update() -> dict[str, Any]:
        cleaned = _validate_name(name)
        organization = await _load(session, context)
        previous = organization.name
        organization.name = cleaned
        await session.commit()
        logger.info("organization_updated organization_id=%s actor_id=%s", organization.id, context.actor_id)
        await record_event(
            organization_id=organization.id,
            actor_id=context.actor_id,
            action="organization.updated",
            resource_type="organization",
            resource_id=organization.id,
            metadata={"previous_name": previous, "name": cleaned},
            request=request,
        )
        return organization_view(organization)

    return await run_gated(context, Role.ADMIN, _update)


async def list_memberships(session: AsyncSession, context: OrgContext) -> dict[str, Any]:
    rows = await org_repo.list_memberships(session, context.actor_id)
    return {
        "items": [
            {
                "organization_id": organization.id,
                "name": organization.name,
                "plan": organization.plan,
                "role": profile.role,
                "is_active": organization.id == context.organization_id,
            }
            for profile, organization in rows
        ]
    }
