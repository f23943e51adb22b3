from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import func, select

from opsdesk.domain.models import AuditLog, OrgSettings
from opsdesk.persistence.db import SessionLocal
from opsdesk.services.audit import record_event
from opsdesk.tests.utils.auth import create_test_member, create_test_org
from opsdesk.tests.utils.fixtures import create_pending_approval


def _auto_mode(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "auto_draft_enabled": True,
        "auto_send_enabled": True,
        "auto_send_risk_threshold": "low",
        "auto_send_allowed_domains": ["Example.com", "example.com"],
        "auto_send_allowed_recipients": ["ops@partner.io"],
        "daily_send_limit": 20,
    }
    payload.update(overrides)
    return payload


async def _audit_rows(org_id: str) -> list[AuditLog]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditLog).where(AuditLog.organization_id == org_id).order_by(AuditLog.id)
        )
        return list(result.scalars().all())


async def _settings_rows(org_id: str) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count()).select_from(OrgSettings).where(OrgSettings.organization_id == org_id)
        )
        return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_defaults_are_returned_before_first_save(client) -> None:
    org_id = await create_test_org()
    _viewer_id, headers = await create_test_member(organization_id=org_id, role="viewer")

    response = await client.get("/v1/settings", headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["is_default"] is True
    assert data["organization_id"] == org_id
    assert data["auto_send_enabled"] is False
    assert data["require_approval_tools"] == ["send_email"]
    assert data["default_tone"] == "professional"
    assert await _settings_rows(org_id) == 0


@pytest.mark.asyncio
async def test_admin_updates_auto_mode_and_is_audited(client) -> None:
    org_id = await create_test_org()
    admin_id, headers = await create_test_member(organization_id=org_id, role="admin")

    response = await client.put("/v1/settings/auto-mode", headers=headers, json=_auto_mode())
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["is_default"] is False
    assert data["auto_send_allowed_domains"] == ["example.com"]
    assert data["auto_send_allowed_recipients"] == ["ops@partner.io"]
    assert data["daily_send_limit"] == 20

    again = await client.put("/v1/settings/auto-mode", headers=headers, json=_auto_mode(daily_send_limit=5))
    assert again.status_code == 200
    assert again.json()["data"]["id"] == data["id"]
    assert await _settings_rows(org_id) == 1

    entries = await _audit_rows(org_id)
    assert [(entry.action, entry.actor_id) for entry in entries] == [
        ("settings.auto_mode_updated", admin_id),
        ("settings.auto_mode_updated", admin_id),
    ]
    assert entries[0].metadata_json["allowed_domains_count"] == 1
    assert "auto_send_allowed_recipients" not in entries[0].metadata_json


@pytest.mark.asyncio
async def test_auto_send_requires_an_allowlist(client) -> None:
    org_id = await create_test_org()
    _admin_id, headers = await create_test_member(organization_id=org_id, role="owner")

    response = await client.put(
        "/v1/settings/auto-mode",
        headers=headers,
        json=_auto_mode(auto_send_allowed_domains=[], auto_send_allowed_recipients=[]),
    )
    assert response.status_code == 422
    assert "auto_send_enabled" in response.json()["error"]["details"]["errors"]

    bad_domain = await client.put(
        "/v1/settings/auto-mode", headers=headers, json=_auto_mode(auto_send_allowed_domains=["not a domain"])
    )
    assert bad_domain.status_code == 422
    assert await _settings_rows(org_id) == 0
    assert await _audit_rows(org_id) == []


@pytest.mark.asyncio
async def test_member_cannot_change_settings(client) -> None:
    org_id = await create_test_org()
    _member_id, headers = await create_test_member(organization_id=org_id, role="member")

    for path, payload in (
        ("/v1/settings/auto-mode", _auto_mode()),
        ("/v1/settings/approval", {"require_approval_tools": [], "min_confidence_threshold": "low"}),
        ("/v1/settings/content", {"default_tone": "casual", "signature_template": None}),
    ):
        response = await client.put(path, headers=headers, json=payload)
        assert response.status_code == 403
    assert await _settings_rows(org_id) == 0
    assert await _audit_rows(org_id) == []


@pytest.mark.asyncio
async def test_approval_and_content_settings_share_one_row(client) -> None:
    org_id = await create_test_org()
    _admin_id, headers = await create_test_member(organization_id=org_id, role="admin")

    approval = await client.put(
        "/v1/settings/approval",
        headers=headers,
        json={"require_approval_tools": ["send_email", "create_invoice"], "min_confidence_threshold": "high"},
    )
    assert approval.status_code == 200
    content = await client.put(
        "/v1/settings/content",
        headers=headers,
        json={"default_tone": "friendly", "signature_template": "-- The Ops Team"},
    )
    assert content.status_code == 200

    data = (await client.get("/v1/settings", headers=headers)).json()["data"]
    assert data["require_approval_tools"] == ["send_email", "create_invoice"]
    assert data["min_confidence_threshold"] == "high"
    assert data["default_tone"] == "friendly"
    assert data["signature_template"] == "-- The Ops Team"
    assert await _settings_rows(org_id) == 1
    assert [entry.action for entry in await _audit_rows(org_id)] == [
        "settings.approval_updated",
        "settings.content_updated",
    ]

    bad_tone = await client.put(
        "/v1/settings/content", headers=headers, json={"default_tone": "sarcastic", "signature_template": None}
    )
    assert bad_tone.status_code == 422


@pytest.mark.asyncio
async def test_usage_counts_todays_runs_and_sends(client) -> None:
    org_id = await create_test_org()
    other_org = await create_test_org(name="Other")
    _viewer_id, headers = await create_test_member(organization_id=org_id, role="viewer")
    await create_pending_approval(organization_id=org_id)
    await create_pending_approval(organization_id=org_id)
    await create_pending_approval(organization_id=other_org)
    for _ in range(3):
        await record_event(
            organization_id=org_id,
            actor_id="executor",
            action="tool.send_email",
            resource_type="email",
        )

    response = await client.get("/v1/settings/usage", headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["runs_today"] == 2
    assert data["sends_today"] == 3
    # The free plan caps the organization's own defaults.
    assert data["daily_run_limit"] == 10
    assert data["daily_send_limit"] == 5
