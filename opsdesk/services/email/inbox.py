from __future__ import annotations

from datetime import datetime, time, timezone
import logging
import secrets
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.core.config import get_settings
from opsdesk.core.errors import ConflictError, NotFoundError, ValidationError
from opsdesk.domain.models import INBOUND_EMAIL_STATUSES, EmailAlias, InboundEmail
from opsdesk.domain.types import utc_now
from opsdesk.persistence.repos import emails as emails_repo
from opsdesk.services.audit import record_event
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.auth.roles import Role, run_gated


logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def email_summary(email: InboundEmail) -> dict[str, Any]:
    return {
        "id": email.id,
        "from_address": email.from_address,
        "from_name": email.from_name,
        "subject": email.subject,
        "snippet": email.snippet,
        "status": email.status,
        "has_attachments": email.has_attachments,
        "received_at": _iso(email.received_at),
        "agent_run_id": email.agent_run_id,
    }


def email_detail(email: InboundEmail) -> dict[str, Any]:
    return {
        **email_summary(email),
        "message_id": email.message_id,
        "thread_id": email.thread_id,
        "in_reply_to": email.in_reply_to,
        "to_addresses": list(email.to_addresses or []),
        "attachment_count": email.attachment_count,
        "processed_at": _iso(email.processed_at),
        "email_date": _iso(email.email_date),
        "processing_error": email.processing_error,
        "provider": email.provider,
        "headers": email.raw_headers or {},
    }


def alias_view(alias: EmailAlias, *, is_new: bool) -> dict[str, Any]:
    return {"alias_address": alias.alias_address, "alias_key": alias.alias_key, "is_new": is_new}


async def list_emails(
    session: AsyncSession,
    context: OrgContext,
    *,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    if status in (None, "", "all"):
        status = None
    elif status not in INBOUND_EMAIL_STATUSES:
        raise ValidationError("Invalid status filter", errors={"status": f"Unknown status: {status}"})
    offset = (max(page, 1) - 1) * limit
    emails, total = await emails_repo.list_inbound_emails(
        session,
        organization_id=context.organization_id,
        status=status,
        offset=offset,
        limit=limit,
    )
    return {"items": [email_summary(email) for email in emails], "total": total, "page": page, "limit": limit}


async def get_email(session: AsyncSession, context: OrgContext, email_id: str) -> dict[str, Any]:
    email = await emails_repo.get_inbound_email(
        session, organization_id=context.organization_id, email_id=email_id
    )
    if email is None:
        raise NotFoundError("Email not found")
    return email_detail(email)


async def email_stats(
    session: AsyncSession,
    context: OrgContext,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    counts = await emails_repo.status_counts(session, organization_id=context.organization_id)
    start_of_day = datetime.combine((now or utc_now()).date(), time.min, tzinfo=timezone.utc)
    today = await emails_repo.count_received_since(
        session, organization_id=context.organization_id, since=start_of_day
    )
    return {
        "total_received": sum(counts.values()),
        "processed": counts.get("processed", 0),
        "pending": counts.get("received", 0) + counts.get("processing", 0),
        "failed": counts.get("failed", 0),
        "ignored": counts.get("ignored", 0),
        "today_count": today,
    }


async def retry_processing(
    session: AsyncSession,
    context: OrgContext,
    email_id: str,
    *,
    request: Request | None = None,
) -> dict[str, Any]:
    # Reset a failed email to received; the external job picker reprocesses it.
    async def _retry() -> dict[str, Any]:
        reset = await emails_repo.reset_failed_email(
            session, organization_id=context.organization_id, email_id=email_id
        )
        if not reset:
            email = await emails_repo.get_inbound_email(
                session, organization_id=context.organization_id, email_id=email_id
            )
            await session.rollback()
            if email is None:
                raise NotFoundError("Email not found")
            raise ConflictError("Email is not in failed status", details={"status": email.status})
        await session.commit()
        logger.info(
            "email_retry_requested organization_id=%s email_id=%s actor_id=%s",
            context.organization_id,
            email_id,
            context.actor_id,
        )
        await record_event(
            organization_id=context.organization_id,
            actor_id=context.actor_id,
            action="email.retry_processing",
            resource_type="inbound_email",
            resource_id=email_id,
            request=request,
        )
        return {"id": email_id, "status": "received"}

    return await run_gated(context, Role.ADMIN, _retry)


def _new_alias_key() -> str:
    return secrets.token_hex(6)


async def _create_alias(session: AsyncSession, organization_id: str) -> EmailAlias:
    alias_key = _new_alias_key()
    domain = get_settings().email_domain
    return await emails_repo.create_alias(
        session,
        organization_id=organization_id,
        alias_key=alias_key,
        alias_address=f"inbox-{alias_key}@{domain}",
    )


async def get_or_create_alias(session: AsyncSession, context: OrgContext) -> dict[str, Any]:
    existing = await emails_repo.get_active_alias(session, organization_id=context.organization_id)
    if existing is not None:
        return alias_view(existing, is_new=False)
    alias = await _create_alias(session, context.organization_id)
    await session.commit()
    logger.info("email_alias_created organization_id=%s", context.organization_id)
    return alias_view(alias, is_new=True)


async def regenerate_alias(
    session: AsyncSession,
    context: OrgContext,
    *,
    request: Request | None = None,
) -> dict[str, Any]:
    # Old aliases stop resolving immediately; mail sent to them is refused as unknown.
    async def _regenerate() -> dict[str, Any]:
        deactivated = await emails_repo.deactivate_aliases(session, organization_id=context.organization_id)
        alias = await _create_alias(session, context.organization_id)
        await session.commit()
        await record_event(
            organization_id=context.organization_id,
            actor_id=context.actor_id,
            action="email.alias_regenerated",
            resource_type="email_alias",
            resource_id=alias.id,
            metadata={"alias_address": alias.alias_address, "deactivated": deactivated},
            request=request,
        )
        return alias_view(alias, is_new=True)

    return await run_gated(context, Role.ADMIN, _regenerate)
