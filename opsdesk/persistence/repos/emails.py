from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.domain.models import EmailAlias, EmailWebhookEvent, InboundEmail
from opsdesk.persistence.guards import tenant_predicate


async def claim_webhook_event(session: AsyncSession, *, provider: str, event_id: str) -> bool:
    # Insert-or-fail on the unique (provider, event_id) key; False means already seen.
    try:
        async with session.begin_nested():
            session.add(EmailWebhookEvent(provider=provider, event_id=event_id))
            await session.flush()
    except IntegrityError:
        return False
    return True


async def get_active_alias(session: AsyncSession, *, organization_id: str) -> EmailAlias | None:
    result = await session.execute(
        select(EmailAlias)
        .where(tenant_predicate(EmailAlias, organization_id), EmailAlias.is_active.is_(True))
        .order_by(EmailAlias.created_at.desc())
    )
    return result.scalars().first()


async def get_org_id_by_alias_key(session: AsyncSession, *, alias_key: str) -> str | None:
    result = await session.execute(
        select(EmailAlias.organization_id).where(
            EmailAlias.alias_key == alias_key,
            EmailAlias.is_active.is_(True),
        )
    )
    return result.scalars().first()


async def create_alias(
    session: AsyncSession,
    *,
    organization_id: str,
    alias_key: str,
    alias_address: str,
) -> EmailAlias:
    alias = EmailAlias(
        organization_id=organization_id,
        alias_key=alias_key,
        alias_address=alias_address,
        is_active=True,
    )
    session.add(alias)
    await session.flush()
    return alias


async def deactivate_aliases(session: AsyncSession, *, organization_id: str) -> int:
    result = await session.execute(
        update(EmailAlias)
        .where(tenant_predicate(EmailAlias, organization_id), EmailAlias.is_active.is_(True))
        .values(is_active=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def insert_inbound_email(session: AsyncSession, values: dict[str, Any]) -> InboundEmail | None:
    # Returns None when the (organization_id, message_id) pair already exists.
    email = InboundEmail(**values)
    try:
        async with session.begin_nested():
            session.add(email)
            await session.flush()
    except IntegrityError:
        return None
    return email


async def list_inbound_emails(
    session: AsyncSession,
    *,
    organization_id: str,
    status: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[InboundEmail], int]:
    filters = [tenant_predicate(InboundEmail, organization_id)]
    if status:
        filters.append(InboundEmail.status == status)
    total = await session.execute(select(func.count()).select_from(InboundEmail).where(*filters))
    result = await session.execute(
        select(InboundEmail)
        .where(*filters)
        .order_by(InboundEmail.received_at.desc(), InboundEmail.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), int(total.scalar() or 0)


async def get_inbound_email(
    session: AsyncSession,
    *,
    organization_id: str,
    email_id: str,
) -> InboundEmail | None:
    result = await session.execute(
        select(InboundEmail).where(
            InboundEmail.id == email_id,
            tenant_predicate(InboundEmail, organization_id),
        )
    )
    return result.scalar_one_or_none()


async def status_counts(session: AsyncSession, *, organization_id: str) -> dict[str, int]:
    result = await session.execute(
        select(InboundEmail.status, func.count())
        .where(tenant_predicate(InboundEmail, organization_id))
        .group_by(InboundEmail.status)
    )
    return {status: int(count) for status, count in result.all()}


async def count_received_since(session: AsyncSession, *, organization_id: str, since: datetime) -> int:
    result = await session.execute(
        select(func.count())
        .select_from(InboundEmail)
        .where(tenant_predicate(InboundEmail, organization_id), InboundEmail.received_at >= since)
    )
    return int(result.scalar() or 0)


async def reset_failed_email(session: AsyncSession, *, organization_id: str, email_id: str) -> bool:
    # Only failed emails move back to received; the guard makes concurrent retries harmless.
    result = await session.execute(
        update(InboundEmail)
        .where(
            InboundEmail.id == email_id,
            tenant_predicate(InboundEmail, organization_id),
            InboundEmail.status == "failed",
        )
        .values(status="received", processing_error=None, processed_at=None, agent_run_id=None)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1
