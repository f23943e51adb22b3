from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import func, select

from opsdesk.domain.models import AgentRun, AuditLog, EmailWebhookEvent, InboundEmail
from opsdesk.persistence.db import SessionLocal
from opsdesk.tests.utils.auth import create_test_org
from opsdesk.tests.utils.fixtures import create_alias


SECRET_HEADERS = {"x-test-secret": "email-test-secret"}


def _payload(to: str, *, message_id: str = "<m-1@example.com>") -> dict[str, Any]:
    return {
        "from": "Client <client@example.com>",
        "to": to,
        "subject": "Need a quote",
        "body": "Please send pricing. Call 555-123-4567.",
        "messageId": message_id,
    }


async def _count(model, *conditions) -> int:
    async with SessionLocal() as session:
        result = await session.execute(select(func.count()).select_from(model).where(*conditions))
        return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_inbound_email_creates_planner_run(client) -> None:
    org_id = await create_test_org()
    alias = await create_alias(organization_id=org_id)

    response = await client.post("/v1/webhooks/email", json=_payload(alias), headers=SECRET_HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["processed"] is True
    assert body["email_id"]
    assert body["agent_run_id"]

    async with SessionLocal() as session:
        email = await session.get(InboundEmail, body["email_id"])
        run = await session.get(AgentRun, body["agent_run_id"])
    assert email is not None and email.status == "processed"
    assert email.organization_id == org_id
    assert "555-123-4567" not in (email.snippet or "")
    assert run is not None and run.agent_type == "planner"
    assert run.input["email"]["id"] == email.id
    assert await _count(AuditLog, AuditLog.action == "email.processed") == 1


@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(client) -> None:
    org_id = await create_test_org()
    alias = await create_alias(organization_id=org_id)

    first = await client.post("/v1/webhooks/email", json=_payload(alias), headers=SECRET_HEADERS)
    second = await client.post("/v1/webhooks/email", json=_payload(alias), headers=SECRET_HEADERS)
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["skipped"] is True
    assert await _count(InboundEmail) == 1
    assert await _count(AgentRun) == 1
    assert await _count(EmailWebhookEvent) == 1


@pytest.mark.asyncio
async def test_bad_secret_fails_closed(client) -> None:
    org_id = await create_test_org()
    alias = await create_alias(organization_id=org_id)

    response = await client.post("/v1/webhooks/email", json=_payload(alias), headers={"x-test-secret": "wrong"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "WEBHOOK_SIGNATURE_INVALID"
    assert await _count(InboundEmail) == 0
    assert await _count(EmailWebhookEvent) == 0


@pytest.mark.asyncio
async def test_unknown_alias_is_acknowledged_without_retry(client) -> None:
    response = await client.post(
        "/v1/webhooks/email", json=_payload("inbox-zzz999@mail.test"), headers=SECRET_HEADERS
    )
    assert response.status_code == 200
    body = response.json()
    assert body["processed"] is False
    assert body["error"] == "Unknown email alias"
    assert await _count(InboundEmail) == 0


@pytest.mark.asyncio
async def test_unsupported_content_type(client) -> None:
    response = await client.post(
        "/v1/webhooks/email",
        content=b"plain text body",
        headers={**SECRET_HEADERS, "Content-Type": "text/plain"},
    )
    assert response.status_code == 415


@pytest.mark.asyncio
async def test_form_encoded_delivery(client) -> None:
    org_id = await create_test_org()
    alias = await create_alias(organization_id=org_id)

    response = await client.post("/v1/webhooks/email", data=_payload(alias), headers=SECRET_HEADERS)
    assert response.status_code == 200
    assert response.json()["processed"] is True
