from __future__ import annotations

from datetime import datetime, timedelta, timezone

from opsdesk.core.config import DEFAULT_APPROVAL_MIN_ROLE_BY_RISK
from opsdesk.domain.models import Approval
from opsdesk.services.approvals import effective_status, is_expired, min_role_for_risk


NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _approval(status: str = "pending", expires_at: datetime | None = None) -> Approval:
    return Approval(
        id="a-1",
        organization_id="org-1",
        agent_run_id="run-1",
        status=status,
        risk_level="low",
        requested_actions=[],
        expires_at=expires_at,
    )


def test_default_policy_requires_owner_for_critical() -> None:
    assert min_role_for_risk("critical", DEFAULT_APPROVAL_MIN_ROLE_BY_RISK) == "owner"
    assert min_role_for_risk("high", DEFAULT_APPROVAL_MIN_ROLE_BY_RISK) == "admin"
    assert min_role_for_risk("none", DEFAULT_APPROVAL_MIN_ROLE_BY_RISK) == "admin"


def test_unknown_risk_level_falls_back_to_owner() -> None:
    assert min_role_for_risk("catastrophic", DEFAULT_APPROVAL_MIN_ROLE_BY_RISK) == "owner"
    assert min_role_for_risk(None, DEFAULT_APPROVAL_MIN_ROLE_BY_RISK) == "owner"


def test_policy_with_unknown_role_falls_back_to_owner() -> None:
    assert min_role_for_risk("low", {"low": "janitor"}) == "owner"
    assert min_role_for_risk("low", {"low": "member"}) == "member"


def test_pending_past_deadline_reads_as_expired() -> None:
    approval = _approval(expires_at=NOW - timedelta(seconds=1))
    assert is_expired(approval, NOW)
    assert effective_status(approval, NOW) == "expired"


def test_deadline_equal_to_now_is_expired() -> None:
    assert effective_status(_approval(expires_at=NOW), NOW) == "expired"


def test_no_deadline_never_expires() -> None:
    assert effective_status(_approval(expires_at=None), NOW) == "pending"


def test_decided_approvals_keep_their_status() -> None:
    approval = _approval(status="rejected", expires_at=NOW - timedelta(days=1))
    assert effective_status(approval, NOW) == "rejected"
