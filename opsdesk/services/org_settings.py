from __future__ import annotations

from datetime import datetime, time, timezone
import logging
import re
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.core.errors import ValidationError
from opsdesk.domain.models import (
    AUTO_SEND_RISK_THRESHOLDS,
    CONFIDENCE_THRESHOLDS,
    CONTENT_TONES,
    OrgSettings,
)
from opsdesk.domain.types import utc_now
from opsdesk.persistence.repos import agent_runs as agent_runs_repo
from opsdesk.persistence.repos import audit as audit_repo
from opsdesk.persistence.repos import org_settings as settings_repo
from opsdesk.persistence.repos import organizations as org_repo
from opsdesk.services.audit import record_event
from opsdesk.services.auth.context import OrgContext
from opsdesk.services.auth.roles import Role, run_gated
from opsdesk.services.billing.plans import get_plan


logger = logging.getLogger(__name__)

DEFAULT_SETTINGS: dict[str, Any] = {
    "auto_draft_enabled": True,
    "auto_send_enabled": False,
    "auto_send_risk_threshold": "none",
    "auto_send_allowed_domains": [],
    "auto_send_allowed_recipients": [],
    "daily_send_limit": 50,
    "daily_run_limit": 100,
    "require_approval_tools": ["send_email"],
    "min_confidence_threshold": "medium",
    "default_tone": "professional",
    "signature_template": None,
}

MAX_DAILY_SEND_LIMIT = 1000
MAX_SIGNATURE_LENGTH = 500
# Sends are counted from the audit trail the executor writes per delivered email.
SEND_AUDIT_ACTION = "tool.send_email"

_DOMAIN_PATTERN = re.compile(r"^[a-z0-9.-]+\.[a-z]{2,}$", re.IGNORECASE)
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TOOL_PATTERN = re.compile(r"^[a-z][a-z0-9_.]{0,63}$")


def settings_view(row: OrgSettings | None, organization_id: str) -> dict[str, Any]:
    if row is None:
        return {
            "id": None,
            "organization_id": organization_id,
            **{key: list(value) if isinstance(value, list) else value for key, value in DEFAULT_SETTINGS.items()},
            "is_default": True,
            "created_at": None,
            "updated_at": None,
        }
    return {
        "id": row.id,
        "organization_id": row.organization_id,
        **{key: getattr(row, key) for key in DEFAULT_SETTINGS},
        "is_default": False,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def get_org_settings(session: AsyncSession, context: OrgContext) -> dict[str, Any]:
    row = await settings_repo.get_org_settings(session, organization_id=context.organization_id)
    return settings_view(row, context.organization_id)


def _normalize_list(values: list[str], pattern: re.Pattern[str], field: str, errors: dict[str, str]) -> list[str]:
    cleaned: list[str] = []
    for value in values:
        item = value.strip().lower() if isinstance(value, str) else ""
        if not pattern.match(item):
            errors[field] = f"Invalid entry: {value!r}"
            return []
        if item not in cleaned:
            cleaned.append(item)
    return cleaned


def _check_choice(value: str, choices: tuple[str, ...], field: str, errors: dict[str, str]) -> None:
    if value not in choices:
        errors[field] = f"Must be one of: {', '.join(choices)}"


async def _save(
    session: AsyncSession,
    context: OrgContext,
    *,
    values: dict[str, Any],
    action: str,
    metadata: dict[str, Any],
    request: Request | None,
) -> dict[str, Any]:
    row = await settings_repo.upsert_org_settings(
        session, organization_id=context.organization_id, values=values
    )
    view = settings_view(row, context.organization_id)
    await session.commit()
    logger.info(
        "org_settings_updated organization_id=%s action=%s actor_id=%s",
        context.organization_id,
        action,
        context.actor_id,
    )
    await record_event(
        organization_id=context.organization_id,
        actor_id=context.actor_id,
        action=action,
        resource_type="org_settings",
        resource_id=view["id"],
        metadata=metadata,
        request=request,
    )
    return view


async def update_auto_mode_settings(
    session: AsyncSession,
    context: OrgContext,
    *,
    auto_draft_enabled: bool,
    auto_send_enabled: bool,
    auto_send_risk_threshold: str,
    auto_send_allowed_domains: list[str],
    auto_send_allowed_recipients: list[str],
    daily_send_limit: int,
    request: Request | None = None,
) -> dict[str, Any]:
    """Replace the organization's auto-draft and auto-send policy.

    Enabling auto-send requires at least one allowed domain or recipient.
    Entries are lower-cased and de-duplicated in their given order.
    """

    async def _update() -> dict[str, Any]:
        errors: dict[str, str] = {}
        _check_choice(auto_send_risk_threshold, AUTO_SEND_RISK_THRESHOLDS, "auto_send_risk_threshold", errors)
        domains = _normalize_list(auto_send_allowed_domains, _DOMAIN_PATTERN, "auto_send_allowed_domains", errors)
        recipients = _normalize_list(
            auto_send_allowed_recipients, _EMAIL_PATTERN, "auto_send_allowed_recipients", errors
        )
        if not 0 <= daily_send_limit <= MAX_DAILY_SEND_LIMIT:
            errors["daily_send_limit"] = f"Must be between 0 and {MAX_DAILY_SEND_LIMIT}"
        if errors:
            raise ValidationError("Invalid settings data", errors=errors)
        if auto_send_enabled and not domains and not recipients:
            raise ValidationError(
                "Invalid settings data",
                errors={"auto_send_enabled": "Auto-send requires at least one allowed domain or recipient"},
            )
        values = {
            "auto_draft_enabled": auto_draft_enabled,
            "auto_send_enabled": auto_send_enabled,
            "auto_send_risk_threshold": auto_send_risk_threshold,
            "auto_send_allowed_domains": domains,
            "auto_send_allowed_recipients": recipients,
            "daily_send_limit": daily_send_limit,
        }
        # Allowlists are summarized; addresses stay out of the audit trail.
        metadata = {
            "auto_draft_enabled": auto_draft_enabled,
            "auto_send_enabled": auto_send_enabled,
            "auto_send_risk_threshold": auto_send_risk_threshold,
            "allowed_domains_count": len(domains),
            "allowed_recipients_count": len(recipients),
            "daily_send_limit": daily_send_limit,
        }
        return await _save(
            session,
            context,
            values=values,
            action="settings.auto_mode_updated",
            metadata=metadata,
            request=request,
        )

    return await run_gated(context, Role.ADMIN, _update)


async def update_approval_settings(
    session: AsyncSession,
    context: OrgContext,
    *,
    require_approval_tools: list[str],
    min_confidence_threshold: str,
    request: Request | None = None,
) -> dict[str, Any]:
    async def _update() -> dict[str, Any]:
        errors: dict[str, str] = {}
        _check_choice(min_confidence_threshold, CONFIDENCE_THRESHOLDS, "min_confidence_threshold", errors)
        tools = _normalize_list(require_approval_tools, _TOOL_PATTERN, "require_approval_tools", errors)
        if errors:
            raise ValidationError("Invalid settings data", errors=errors)
        values = {"require_approval_tools": tools, "min_confidence_threshold": min_confidence_threshold}
        return await _save(
            session,
            context,
            values=values,
            action="settings.approval_updated",
            metadata=dict(values),
            request=request,
        )

    return await run_gated(context, Role.ADMIN, _update)


async def update_content_settings(
    session: AsyncSession,
    context: OrgContext,
    *,
    default_tone: str,
    signature_template: str | None,
    request: Request | None = None,
) -> dict[str, Any]:
    async def _update() -> dict[str, Any]:
        errors: dict[str, str] = {}
        _check_choice(default_tone, CONTENT_TONES, "default_tone", errors)
        signature = signature_template if signature_template else None
        if signature is not None and len(signature) > MAX_SIGNATURE_LENGTH:
            errors["signature_template"] = f"Must be at most {MAX_SIGNATURE_LENGTH} characters"
        if errors:
            raise ValidationError("Invalid settings data", errors=errors)
        values = {"default_tone": default_tone, "signature_template": signature}
        return await _save(
            session,
            context,
            values=values,
            action="settings.content_updated",
            metadata=dict(values),
            request=request,
        )

    return await run_gated(context, Role.ADMIN, _update)


def start_of_day(now: datetime) -> datetime:
    return datetime.combine(now.astimezone(timezone.utc).date(), time.min, tzinfo=timezone.utc)


async def daily_limits(session: AsyncSession, organization_id: str) -> dict[str, int]:
    # The stricter of the organization's own cap and its plan's cap applies.
    row = await settings_repo.get_org_settings(session, organization_id=organization_id)
    organization = await org_repo.get_organization(session, organization_id)
    plan_limits = (organization.plan_limits if organization else None) or get_plan(
        organization.plan if organization else None
    ).limits
    run_limit = row.daily_run_limit if row else DEFAULT_SETTINGS["daily_run_limit"]
    send_limit = row.daily_send_limit if row else DEFAULT_SETTINGS["daily_send_limit"]
    plan_runs = plan_limits.get("runs_per_day")
    plan_sends = plan_limits.get("sends_per_day")
    if isinstance(plan_runs, int) and plan_runs >= 0:
        run_limit = min(run_limit, plan_runs)
    if isinstance(plan_sends, int) and plan_sends >= 0:
        send_limit = min(send_limit, plan_sends)
    return {"runs": run_limit, "sends": send_limit}


async def get_usage_stats(
    session: AsyncSession,
    context: OrgContext,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    since = start_of_day(now or utc_now())
    runs_today = await agent_runs_repo.count_runs_since(
        session, organization_id=context.organization_id, since=since
    )
    sends_today = await audit_repo.count_actions_since(
        session, organization_id=context.organization_id, action=SEND_AUDIT_ACTION, since=since
    )
    limits = await daily_limits(session, context.organization_id)
    return {
        "runs_today": runs_today,
        "sends_today": sends_today,
        "daily_run_limit": limits["runs"],
        "daily_send_limit": limits["sends"],
        "period_start": since.isoformat(),
    }
