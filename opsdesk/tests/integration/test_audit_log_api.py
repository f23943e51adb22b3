from __future__ import annotations

import logging

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from opsdesk.core.errors import AuditLogImmutableError
from opsdesk.domain.models import Approval, AuditLog
from opsdesk.persistence.db import SessionLocal, engine
from opsdesk.services.audit import record_event
from opsdesk.tests.utils.auth import create_test_member, create_test_org
from opsdesk.tests.utils.fixtures import create_pending_approval


async def _seed_events(org_id: str, count: int, *, action: str = "approval.approved") -> None:
    for index in range(count):
        assert await record_event(
            organization_id=org_id,
            actor_id="actor-1",
            action=action,
            resource_type="approval",
            resource_id=f"a-{index}",
            metadata={"index": index, "token": "hidden"},
        )


@pytest.mark.asyncio
async def test_audit_rows_are_append_only() -> None:
    org_id = await create_test_org()
    await _seed_events(org_id, 1)

    async with SessionLocal() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
        entry.action = "approval.rejected"
        with pytest.raises(AuditLogImmutableError):
            await session.flush()
        await session.rollback()

    async with SessionLocal() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
        await session.delete(entry)
        with pytest.raises(AuditLogImmutableError):
            await session.flush()
        await session.rollback()

    async with SessionLocal() as session:
        entry = (await session.execute(select(AuditLog))).scalar_one()
    assert entry.action == "approval.approved"


@pytest.mark.asyncio
async def test_records_are_ordered_and_redacted() -> None:
    org_id = await create_test_org()
    await _seed_events(org_id, 5)

    async with SessionLocal() as session:
        result = await session.execute(select(AuditLog).order_by(AuditLog.id))
        entries = list(result.scalars().all())
    assert len(entries) == 5
    created = [entry.created_at for entry in entries]
    assert created == sorted(created)
    assert all(entry.metadata_json["token"] == "[REDACTED]" for entry in entries)


@pytest.mark.asyncio
async def test_audit_logs_endpoint_is_scoped_and_paginated(client) -> None:
    org_id = await create_test_org()
    other_org = await create_test_org(name="Other")
    _viewer_id, headers = await create_test_member(organization_id=org_id, role="viewer")
    await _seed_events(org_id, 3)
    await _seed_events(org_id, 1, action="email.processed")
    await _seed_events(other_org, 2)

    response = await client.get("/v1/audit/logs?limit=2", headers=headers)
    assert response.status_code == 200
    page = response.json()["data"]
    assert page["total"] == 4
    assert len(page["items"]) == 2

    filtered = await client.get("/v1/audit/logs?action=email", headers=headers)
    assert [item["action"] for item in filtered.json()["data"]["items"]] == ["email.processed"]

    actions = await client.get("/v1/audit/actions", headers=headers)
    assert actions.json()["data"] == ["approval.approved", "email.processed"]


@pytest.mark.asyncio
async def test_audit_export_requires_admin(client) -> None:
    org_id = await create_test_org()
    _member_id, member_headers = await create_test_member(organization_id=org_id, role="member")
    _admin_id, admin_headers = await create_test_member(organization_id=org_id, role="admin")
    await _seed_events(org_id, 2)

    denied = await client.get("/v1/audit/export", headers=member_headers)
    assert denied.status_code == 403

    exported = await client.get("/v1/audit/export", headers=admin_headers)
    assert exported.status_code == 200
    data = exported.json()["data"]
    assert data["total"] == 2
    assert data["truncated"] is False
    assert len(data["items"]) == 2


class _FailingCommitSession(AsyncSession):
    async def commit(self) -> None:
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))


@pytest.mark.asyncio
async def test_audit_failure_does_not_undo_the_decision(client, monkeypatch, caplog) -> None:
    org_id = await create_test_org()
    _owner_id, headers = await create_test_member(organization_id=org_id, role="owner")
    approval_id, _run_id = await create_pending_approval(organization_id=org_id)
    monkeypatch.setattr(
        "opsdesk.services.audit.SessionLocal",
        async_sessionmaker(engine, class_=_FailingCommitSession, expire_on_commit=False),
    )

    with caplog.at_level(logging.ERROR, logger="opsdesk.services.audit"):
        response = await client.post(f"/v1/approvals/{approval_id}/approve", headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["decision"] == "approved"
    assert any("audit_write_failed" in record.getMessage() for record in caplog.records)

    async with SessionLocal() as session:
        approval = await session.get(Approval, approval_id)
        entries = (await session.execute(select(AuditLog))).scalars().all()
    assert approval is not None and approval.status == "approved"
    assert entries == []
