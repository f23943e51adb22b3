from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.core.config import get_settings
from opsdesk.core.errors import ConflictError, NotFoundError, ValidationError
from opsdesk.domain.models import AgentRun, Approval
from opsdesk.domain.types import utc_now
from opsdesk.persistence.repos import approvals as approvals_repo
from opsdesk.services.audit import record_event
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.auth.roles import Role, role_rank, run_gated


logger = logging.getLogger(__name__)

DECISIONS = ("approve", "reject")
MAX_REASON_LENGTH = 500
# Risk levels missing from the policy require the highest role.
_FALLBACK_MIN_ROLE = Role.OWNER.label


@dataclass(frozen=True)
class ApprovalView:
    # Read model; status is the effective status after lazy expiry.
    id: str
    organization_id: str
    agent_run_id: str
    status: str
    risk_level: str
    requested_actions: list[dict[str, Any]]
    requested_by: str | None
    decided_by: str | None
    decided_at: datetime | None
    decision_reason: str | None
    expires_at: datetime | None
    created_at: datetime
    agent_run: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "agent_run_id": self.agent_run_id,
            "status": self.status,
            "risk_level": self.risk_level,
            "requested_actions": self.requested_actions,
            "requested_by": self.requested_by,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "decision_reason": self.decision_reason,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "agent_run": self.agent_run,
        }


@dataclass(frozen=True)
class ApprovalDecision:
    # Outcome of a decision; actions are handed to the external executor, in order.
    approval: ApprovalView
    decision: str
    actions: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "approval": self.approval.as_dict(),
            "decision": self.decision,
            "actions": self.actions,
        }


def is_expired(approval: Approval, now: datetime) -> bool:
    return approval.expires_at is not None and approval.expires_at <= now


def effective_status(approval: Approval, now: datetime) -> str:
    # Pending rows past their deadline read as expired even before the sweep persists it.
    if approval.status == "pending" and is_expired(approval, now):
        return "expired"
    return approval.status


def min_role_for_risk(risk_level: str | None, policy: dict[str, str] | None = None) -> str:
    resolved = policy if policy is not None else get_settings().approval_min_role_by_risk
    role = resolved.get((risk_level or "").lower())
    if role is None or role_rank(role) == 0:
        return _FALLBACK_MIN_ROLE
    return role


def _agent_run_summary(run: AgentRun | None) -> dict[str, Any] | None:
    if run is None:
        return None
    return {
        "id": run.id,
        "agent_type": run.agent_type,
        "status": run.status,
        "input": run.input,
        "output": run.output,
    }


def to_view(approval: Approval, run: AgentRun | None, now: datetime) -> ApprovalView:
    status = effective_status(approval, now)
    decided_at = approval.decided_at
    # An unswept expiry reads as decided at its deadline.
    if decided_at is None and status == "expired":
        decided_at = approval.expires_at
    return ApprovalView(
        id=approval.id,
        organization_id=approval.organization_id,
        agent_run_id=approval.agent_run_id,
        status=status,
        risk_level=approval.risk_level,
        requested_actions=list(approval.requested_actions or []),
        requested_by=approval.requested_by,
        decided_by=approval.decided_by,
        decided_at=decided_at,
        decision_reason=approval.decision_reason,
        expires_at=approval.expires_at,
        created_at=approval.created_at,
        agent_run=_agent_run_summary(run),
    )


async def list_approvals(
    session: AsyncSession,
    context: OrgContext,
    *,
    status: str | None = None,
    risk_level: str | None = None,
    limit: int = 100,
    now: datetime | None = None,
) -> list[ApprovalView]:
    resolved_now = now or utc_now()
    rows = await approvals_repo.list_approvals(
        session,
        organization_id=context.organization_id,
        status=None if status in (None, "", "all") else status,
        risk_level=None if risk_level in (None, "", "all") else risk_level,
        now=resolved_now,
        limit=limit,
    )
    return [to_view(approval, run, resolved_now) for approval, run in rows]


async def get_approval(
    session: AsyncSession,
    context: OrgContext,
    approval_id: str,
    *,
    now: datetime | None = None,
) -> ApprovalView:
    row = await approvals_repo.get_approval(
        session, organization_id=context.organization_id, approval_id=approval_id
    )
    if row is None:
        raise NotFoundError("Approval not found")
    return to_view(row[0], row[1], now or utc_now())


async def count_pending(session: AsyncSession, context: OrgContext, *, now: datetime | None = None) -> int:
    return await approvals_repo.count_pending(
        session, organization_id=context.organization_id, now=now or utc_now()
    )


def _validate_decision(decision: str, reason: str | None) -> str | None:
    errors: dict[str, str] = {}
    if decision not in DECISIONS:
        errors["decision"] = "Decision must be approve or reject"
    cleaned = reason.strip() if isinstance(reason, str) else None
    if decision == "reject" and not cleaned:
        errors["reason"] = "Rejection reason is required"
    elif cleaned and len(cleaned) > MAX_REASON_LENGTH:
        errors["reason"] = f"Reason must be at most {MAX_REASON_LENGTH} characters"
    if errors:
        raise ValidationError("Invalid decision", errors=errors)
    return cleaned or None


async def decide_approval(
    session: AsyncSession,
    context: OrgContext,
    approval_id: str,
    decision: str,
    *,
    reason: str | None = None,
    now: datetime | None = None,
    request: Request | None = None,
) -> ApprovalDecision:
    """Approve or reject a pending approval on behalf of ``context``.

    Only a pending, unexpired approval can be decided. The update is
    conditional on that state, so of two concurrent deciders exactly one wins
    and the other gets a ``ConflictError`` without touching the stored
    decision. An approval found expired is persisted as expired.
    """
    cleaned_reason = _validate_decision(decision, reason)
    resolved_now = now or utc_now()

    row = await approvals_repo.get_approval(
        session, organization_id=context.organization_id, approval_id=approval_id
    )
    if row is None:
        raise NotFoundError("Approval not found")
    approval, _run = row
    minimum_role = min_role_for_risk(approval.risk_level)

    async def _decide() -> ApprovalDecision:
        new_status = "approved" if decision == "approve" else "rejected"
        updated = await approvals_repo.transition_pending(
            session,
            organization_id=context.organization_id,
            approval_id=approval_id,
            values={
                "status": new_status,
                "decided_by": context.actor_id,
                "decided_at": resolved_now,
                "decision_reason": cleaned_reason,
            },
            now=resolved_now,
        )
        if not updated:
            await session.rollback()
            await _raise_undecidable(session, context, approval_id, resolved_now)

        await approvals_repo.set_agent_run_status(
            session,
            organization_id=context.organization_id,
            agent_run_id=approval.agent_run_id,
            status=new_status,
            error=cleaned_reason if new_status == "rejected" else None,
        )
        refreshed = await approvals_repo.get_approval(
            session, organization_id=context.organization_id, approval_id=approval_id
        )
        if refreshed is None:
            await session.rollback()
            raise NotFoundError("Approval not found")
        view = to_view(refreshed[0], refreshed[1], resolved_now)
        await session.commit()
        logger.info(
            "approval_decided approval_id=%s organization_id=%s status=%s actor_id=%s",
            approval_id,
            context.organization_id,
            new_status,
            context.actor_id,
        )
        # The decision is committed; the audit write is best effort from here.
        await record_event(
            organization_id=context.organization_id,
            actor_id=context.actor_id,
            action=f"approval.{new_status}",
            resource_type="approval",
            resource_id=approval_id,
            metadata={
                "reason": cleaned_reason,
                "risk_level": view.risk_level,
                "agent_run_id": view.agent_run_id,
                "action_count": len(view.requested_actions),
            },
            request=request,
        )
        actions = view.requested_actions if new_status == "approved" else []
        return ApprovalDecision(approval=view, decision=new_status, actions=actions)

    return await run_gated(context, minimum_role, _decide)


async def _raise_undecidable(
    session: AsyncSession,
    context: OrgContext,
    approval_id: str,
    now: datetime,
) -> None:
    row = await approvals_repo.get_approval(
        session, organization_id=context.organization_id, approval_id=approval_id
    )
    if row is None:
        raise NotFoundError("Approval not found")
    current = row[0]
    if current.status == "pending" and is_expired(current, now):
        await approvals_repo.mark_expired(
            session, now=now, organization_id=context.organization_id, approval_id=approval_id
        )
        await session.commit()
        raise ConflictError("Approval has expired", details={"status": "expired"})
    raise ConflictError(f"Approval already {current.status}", details={"status": current.status})


async def expire_stale_approvals(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    organization_id: str | None = None,
) -> int:
    # Periodic sweep that persists the expiry every read already presents.
    expired = await approvals_repo.mark_expired(
        session, now=now or utc_now(), organization_id=organization_id
    )
    await session.commit()
    if expired:
        logger.info("approvals_expired count=%s organization_id=%s", expired, organization_id)
    return expired
