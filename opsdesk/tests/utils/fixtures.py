from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from opsdesk.domain.models import AgentRun, Approval, EmailAlias, InboundEmail
from opsdesk.domain.types import utc_now
from opsdesk.persistence.db import SessionLocal


DEFAULT_ACTIONS: list[dict[str, Any]] = [
    {"type": "send_email", "to": "client@example.com"},
    {"type": "create_task", "title": "Follow up"},
    {"type": "update_crm", "field": "stage", "value": "won"},
]


async def create_pending_approval(
    *,
    organization_id: str,
    risk_level: str = "medium",
    expires_at: datetime | None = None,
    actions: list[dict[str, Any]] | None = None,
) -> tuple[str, str]:
    # Seed an agent run awaiting approval plus its approval row.
    run_id = str(uuid4())
    approval_id = str(uuid4())
    async with SessionLocal() as session:
        session.add(
            AgentRun(
                id=run_id,
                organization_id=organization_id,
                agent_type="planner",
                input={"goal": "test"},
                status="awaiting_approval",
            )
        )
        await session.flush()
        session.add(
            Approval(
                id=approval_id,
                organization_id=organization_id,
                agent_run_id=run_id,
                requested_actions=list(DEFAULT_ACTIONS if actions is None else actions),
                risk_level=risk_level,
                status="pending",
                expires_at=expires_at if expires_at is not None else utc_now() + timedelta(hours=1),
            )
        )
        await session.commit()
    return approval_id, run_id


async def create_alias(*, organization_id: str, alias_key: str = "abc123", domain: str = "mail.test") -> str:
    async with SessionLocal() as session:
        session.add(
            EmailAlias(
                organization_id=organization_id,
                alias_key=alias_key,
                alias_address=f"inbox-{alias_key}@{domain}",
                is_active=True,
            )
        )
        await session.commit()
    return f"inbox-{alias_key}@{domain}"


async def create_inbound_email(*, organization_id: str, status: str = "failed") -> str:
    email_id = str(uuid4())
    async with SessionLocal() as session:
        session.add(
            InboundEmail(
                id=email_id,
                organization_id=organization_id,
                message_id=f"<{email_id}@example.com>",
                from_address="sender@example.com",
                to_addresses=["inbox-abc123@mail.test"],
                subject="Help",
                status=status,
                processing_error="Failed to create agent run" if status == "failed" else None,
                provider="test",
            )
        )
        await session.commit()
    return email_id
