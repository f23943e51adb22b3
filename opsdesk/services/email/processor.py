from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.core.errors import ValidationError
from opsdesk.domain.models import InboundEmail
from opsdesk.domain.types import utc_now
from opsdesk.persistence.repos import agent_runs as agent_runs_repo
from opsdesk.persistence.repos import emails as emails_repo
from opsdesk.services.audit import record_event
from opsdesk.services.email.parser import InboundEmailPayload, ParsedEmail, extract_alias_key, parse_inbound_email


logger = logging.getLogger(__name__)

INGESTION_ACTOR = "email-ingestion"
PLANNER_AGENT = "planner"
_PLANNER_CONSTRAINTS = [
    "This request came from an inbound email",
    "Any outbound action requires human approval",
    "Verify sender identity before taking action",
]


@dataclass(frozen=True)
class EmailProcessingResult:
    success: bool
    email_id: str | None = None
    agent_run_id: str | None = None
    error: str | None = None
    skipped: bool = False
    skip_reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"received": True, "processed": False, "error": self.error, "email_id": self.email_id}
        if self.skipped:
            return {"received": True, "processed": True, "skipped": True, "reason": self.skip_reason}
        return {
            "received": True,
            "processed": True,
            "email_id": self.email_id,
            "agent_run_id": self.agent_run_id,
        }


def build_goal(email: ParsedEmail) -> str:
    parts = [f"Process inbound email from {email.from_address}"]
    if email.subject:
        parts.append(f'Subject: "{email.subject}"')
    if email.snippet:
        parts.append(f'Content preview: "{email.snippet}"')
    if email.has_attachments:
        suffix = "s" if email.attachment_count > 1 else ""
        parts.append(f"({email.attachment_count} attachment{suffix})")
    return ". ".join(parts)


def _email_values(organization_id: str, parsed: InboundEmailPayload) -> dict[str, Any]:
    email = parsed.email
    return {
        "organization_id": organization_id,
        "message_id": email.message_id,
        "thread_id": email.thread_id,
        "in_reply_to": email.in_reply_to,
        "from_address": email.from_address,
        "from_name": email.from_name,
        "to_addresses": email.to_addresses,
        "subject": email.subject,
        "snippet": email.snippet,
        "has_attachments": email.has_attachments,
        "attachment_count": email.attachment_count,
        "status": "received",
        "email_date": email.email_date,
        "provider": parsed.provider,
        "provider_event_id": parsed.provider_event_id,
        "raw_headers": email.headers,
        "received_at": utc_now(),
    }


async def process_inbound_email(
    session: AsyncSession,
    *,
    provider: str,
    payload: Any,
    request: Request | None = None,
) -> EmailProcessingResult:
    """Store a verified inbound email and hand it to the planner agent.

    Callers verify the delivery signature first. Deliveries are deduplicated on
    (provider, event id); an email whose planner run cannot be created ends in
    ``failed`` with the reason recorded.
    """
    try:
        parsed = parse_inbound_email(provider, payload)
    except ValidationError as exc:
        logger.warning("email_payload_invalid provider=%s error=%s", provider, exc.message)
        return EmailProcessingResult(success=False, error="Failed to parse email payload")

    claimed = await emails_repo.claim_webhook_event(
        session, provider=provider, event_id=parsed.provider_event_id
    )
    if not claimed:
        await session.rollback()
        logger.info("email_event_duplicate provider=%s event_id=%s", provider, parsed.provider_event_id)
        return EmailProcessingResult(success=True, skipped=True, skip_reason="Duplicate event")

    alias_key = extract_alias_key(parsed.recipient)
    if alias_key is None:
        await session.commit()
        logger.warning("email_alias_invalid recipient=%s", parsed.recipient)
        return EmailProcessingResult(success=False, error="Invalid email alias format")

    organization_id = await emails_repo.get_org_id_by_alias_key(session, alias_key=alias_key)
    if organization_id is None:
        await session.commit()
        logger.warning("email_alias_unknown alias_key=%s", alias_key)
        return EmailProcessingResult(success=False, error="Unknown email alias")

    email = await emails_repo.insert_inbound_email(session, _email_values(organization_id, parsed))
    if email is None:
        await session.commit()
        logger.info(
            "email_message_duplicate organization_id=%s message_id=%s",
            organization_id,
            parsed.email.message_id,
        )
        return EmailProcessingResult(success=True, skipped=True, skip_reason="Duplicate message")
    email.status = "processing"
    await session.commit()

    return await _trigger_planner(session, email, parsed.email, request=request)


async def _trigger_planner(
    session: AsyncSession,
    email: InboundEmail,
    parsed: ParsedEmail,
    *,
    request: Request | None,
) -> EmailProcessingResult:
    email_id = email.id
    organization_id = email.organization_id
    try:
        run = await agent_runs_repo.create_agent_run(
            session,
            organization_id=organization_id,
            agent_type=PLANNER_AGENT,
            input={
                "goal": build_goal(parsed),
                "source": "email",
                "email": {
                    "id": email_id,
                    "from": parsed.from_address,
                    "subject": parsed.subject,
                    "snippet": parsed.snippet,
                    "has_attachments": parsed.has_attachments,
                },
                "constraints": list(_PLANNER_CONSTRAINTS),
            },
            created_by=INGESTION_ACTOR,
        )
        email.status = "processed"
        email.agent_run_id = run.id
        email.processing_error = None
        email.processed_at = utc_now()
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        message = f"Failed to create agent run: {exc.__class__.__name__}"
        logger.error(
            "email_processing_failed organization_id=%s email_id=%s",
            organization_id,
            email_id,
            exc_info=exc,
        )
        stored = await emails_repo.get_inbound_email(
            session, organization_id=organization_id, email_id=email_id
        )
        if stored is not None:
            stored.status = "failed"
            stored.processing_error = message
            stored.processed_at = utc_now()
            await session.commit()
        return EmailProcessingResult(success=False, email_id=email_id, error=message)

    logger.info(
        "email_processed organization_id=%s email_id=%s agent_run_id=%s",
        organization_id,
        email_id,
        run.id,
    )
    await record_event(
        organization_id=organization_id,
        actor_id=INGESTION_ACTOR,
        action="email.processed",
        resource_type="inbound_email",
        resource_id=email_id,
        metadata={"from": parsed.from_address, "subject": parsed.subject, "agent_run_id": run.id},
        request=request,
    )
    return EmailProcessingResult(success=True, email_id=email_id, agent_run_id=run.id)
