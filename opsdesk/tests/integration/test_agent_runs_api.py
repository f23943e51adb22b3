from __future__ import annotations

import pytest
from sqlalchemy import select

from opsdesk.domain.models import AgentRun, AuditLog, InboundEmail
from opsdesk.persistence.db import SessionLocal
from opsdesk.tests.utils.auth import create_test_member, create_test_org
from opsdesk.tests.utils.fixtures import create_inbound_email, create_pending_approval


async def _audit_actions(org_id: str) -> list[str]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditLog.action).where(AuditLog.organization_id == org_id).order_by(AuditLog.id)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_agent_runs_listed_for_active_org_only(client) -> None:
    org_id = await create_test_org()
    other_org = await create_test_org(name="Other")
    _viewer_id, headers = await create_test_member(organization_id=org_id, role="viewer")
    _approval_id, run_id = await create_pending_approval(organization_id=org_id)
    _other_approval, other_run = await create_pending_approval(organization_id=other_org)

    listing = await client.get("/v1/agent-runs?status=awaiting_approval", headers=headers)
    assert listing.status_code == 200
    page = listing.json()["data"]
    assert page["total"] == 1
    assert page["items"][0]["id"] == run_id

    detail = await client.get(f"/v1/agent-runs/{run_id}", headers=headers)
    assert detail.json()["data"]["agent_type"] == "planner"

    hidden = await client.get(f"/v1/agent-runs/{other_run}", headers=headers)
    assert hidden.status_code == 404

    invalid = await client.get("/v1/agent-runs?status=dreaming", headers=headers)
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_member_creates_and_completes_a_run(client) -> None:
    org_id = await create_test_org()
    member_id, headers = await create_test_member(organization_id=org_id, role="member")

    created = await client.post(
        "/v1/agent-runs", headers=headers, json={"agent_type": " planner ", "input": {"goal": "Weekly report"}}
    )
    assert created.status_code == 201
    run = created.json()["data"]
    assert run["status"] == "pending"
    assert run["agent_type"] == "planner"
    assert run["created_by"] == member_id

    running = await client.patch(f"/v1/agent-runs/{run['id']}/status", headers=headers, json={"status": "running"})
    assert running.status_code == 200
    failed = await client.patch(
        f"/v1/agent-runs/{run['id']}/status", headers=headers, json={"status": "failed", "error": "timeout"}
    )
    assert failed.status_code == 200
    assert failed.json()["data"]["error"] == "timeout"

    assert await _audit_actions(org_id) == [
        "agent_run.created",
        "agent_run.status_updated",
        "agent_run.status_updated",
    ]


@pytest.mark.asyncio
async def test_viewer_cannot_create_runs(client) -> None:
    org_id = await create_test_org()
    _viewer_id, headers = await create_test_member(organization_id=org_id, role="viewer")

    response = await client.post("/v1/agent-runs", headers=headers, json={"agent_type": "planner"})
    assert response.status_code == 403
    async with SessionLocal() as session:
        runs = (await session.execute(select(AgentRun))).scalars().all()
    assert runs == []


@pytest.mark.asyncio
async def test_daily_run_limit_blocks_creation(client) -> None:
    org_id = await create_test_org()
    _member_id, headers = await create_test_member(organization_id=org_id, role="member")
    # Free plan allows ten runs per day.
    for _ in range(10):
        ok = await client.post("/v1/agent-runs", headers=headers, json={"agent_type": "planner"})
        assert ok.status_code == 201

    blocked = await client.post("/v1/agent-runs", headers=headers, json={"agent_type": "planner"})
    assert blocked.status_code == 429
    error = blocked.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"] == {"limit": 10, "used": 10}


@pytest.mark.asyncio
async def test_approval_workflow_statuses_are_not_set_by_hand(client) -> None:
    org_id = await create_test_org()
    _owner_id, headers = await create_test_member(organization_id=org_id, role="owner")
    _approval_id, run_id = await create_pending_approval(organization_id=org_id)

    held = await client.patch(f"/v1/agent-runs/{run_id}/status", headers=headers, json={"status": "completed"})
    assert held.status_code == 409
    assert held.json()["error"]["details"] == {"status": "awaiting_approval"}

    reserved = await client.patch(f"/v1/agent-runs/{run_id}/status", headers=headers, json={"status": "approved"})
    assert reserved.status_code == 422

    async with SessionLocal() as session:
        run = await session.get(AgentRun, run_id)
    assert run is not None and run.status == "awaiting_approval"
    assert await _audit_actions(org_id) == []


@pytest.mark.asyncio
async def test_only_admins_delete_runs(client) -> None:
    org_id = await create_test_org()
    _member_id, member_headers = await create_test_member(organization_id=org_id, role="member")
    _admin_id, admin_headers = await create_test_member(organization_id=org_id, role="admin")
    created = await client.post("/v1/agent-runs", headers=member_headers, json={"agent_type": "planner"})
    run_id = created.json()["data"]["id"]
    email_id = await create_inbound_email(organization_id=org_id, status="processed")
    async with SessionLocal() as session:
        email = await session.get(InboundEmail, email_id)
        email.agent_run_id = run_id
        await session.commit()

    denied = await client.delete(f"/v1/agent-runs/{run_id}", headers=member_headers)
    assert denied.status_code == 403

    deleted = await client.delete(f"/v1/agent-runs/{run_id}", headers=admin_headers)
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"id": run_id, "deleted": True}

    missing = await client.get(f"/v1/agent-runs/{run_id}", headers=admin_headers)
    assert missing.status_code == 404
    async with SessionLocal() as session:
        email = await session.get(InboundEmail, email_id)
    assert email is not None and email.agent_run_id is None
    assert await _audit_actions(org_id) == ["agent_run.created", "agent_run.deleted"]


@pytest.mark.asyncio
async def test_runs_with_an_approval_are_kept(client) -> None:
    org_id = await create_test_org()
    _owner_id, headers = await create_test_member(organization_id=org_id, role="owner")
    _approval_id, run_id = await create_pending_approval(organization_id=org_id)

    response = await client.delete(f"/v1/agent-runs/{run_id}", headers=headers)
    assert response.status_code == 409
    async with SessionLocal() as session:
        assert await session.get(AgentRun, run_id) is not None
