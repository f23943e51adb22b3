from __future__ import annotations

import pytest
from sqlalchemy import select

from opsdesk.domain.models import EmailAlias, InboundEmail
from opsdesk.persistence.db import SessionLocal
from opsdesk.tests.utils.auth import create_test_member, create_test_org
from opsdesk.tests.utils.fixtures import create_inbound_email


@pytest.mark.asyncio
async def test_alias_is_created_once(client) -> None:
    org_id = await create_test_org()
    _viewer_id, headers = await create_test_member(organization_id=org_id, role="viewer")

    first = await client.get("/v1/emails/alias", headers=headers)
    second = await client.get("/v1/emails/alias", headers=headers)
    assert first.json()["data"]["is_new"] is True
    assert second.json()["data"]["is_new"] is False
    address = first.json()["data"]["alias_address"]
    assert address.startswith("inbox-") and address.endswith("@mail.test")
    assert second.json()["data"]["alias_address"] == address


@pytest.mark.asyncio
async def test_regenerate_alias_requires_admin_and_deactivates_old(client) -> None:
    org_id = await create_test_org()
    _member_id, member_headers = await create_test_member(organization_id=org_id, role="member")
    _admin_id, admin_headers = await create_test_member(organization_id=org_id, role="admin")
    previous = (await client.get("/v1/emails/alias", headers=admin_headers)).json()["data"]

    denied = await client.post("/v1/emails/alias/regenerate", headers=member_headers)
    assert denied.status_code == 403

    regenerated = await client.post("/v1/emails/alias/regenerate", headers=admin_headers)
    assert regenerated.status_code == 200
    assert regenerated.json()["data"]["alias_key"] != previous["alias_key"]

    async with SessionLocal() as session:
        aliases = (await session.execute(select(EmailAlias))).scalars().all()
    active = {alias.alias_key: alias.is_active for alias in aliases}
    assert active[previous["alias_key"]] is False
    assert active[regenerated.json()["data"]["alias_key"]] is True


@pytest.mark.asyncio
async def test_retry_moves_failed_email_back_to_received(client) -> None:
    org_id = await create_test_org()
    _admin_id, headers = await create_test_member(organization_id=org_id, role="admin")
    email_id = await create_inbound_email(organization_id=org_id, status="failed")

    response = await client.post(f"/v1/emails/{email_id}/retry", headers=headers)
    assert response.status_code == 200
    assert response.json()["data"] == {"id": email_id, "status": "received"}

    async with SessionLocal() as session:
        email = await session.get(InboundEmail, email_id)
    assert email is not None
    assert email.status == "received"
    assert email.processing_error is None

    again = await client.post(f"/v1/emails/{email_id}/retry", headers=headers)
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_retry_unknown_email_is_not_found(client) -> None:
    org_id = await create_test_org()
    _admin_id, headers = await create_test_member(organization_id=org_id, role="admin")

    response = await client.post("/v1/emails/does-not-exist/retry", headers=headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_list_and_stats(client) -> None:
    org_id = await create_test_org()
    _viewer_id, headers = await create_test_member(organization_id=org_id, role="viewer")
    failed_id = await create_inbound_email(organization_id=org_id, status="failed")
    await create_inbound_email(organization_id=org_id, status="processed")

    listing = await client.get("/v1/emails?status=failed", headers=headers)
    assert listing.status_code == 200
    page = listing.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["id"] == failed_id

    stats = await client.get("/v1/emails/stats", headers=headers)
    data = stats.json()["data"]
    assert data["total_received"] == 2
    assert data["failed"] == 1
    assert data["processed"] == 1
    assert data["today_count"] == 2

    bad = await client.get("/v1/emails?status=bogus", headers=headers)
    assert bad.status_code == 422
