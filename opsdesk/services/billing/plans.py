from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from opsdesk.core.config import get_settings


PLAN_IDS = ("free", "starter", "pro", "agency")


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price_monthly: int
    limits: dict[str, Any]


def _limits(
    *,
    runs_per_day: int,
    sends_per_day: int,
    max_actions_per_run: int,
    max_integrations: int,
    max_team_members: int,
    max_contacts: int,
    auto_send: bool,
    api_access: bool,
    custom_branding: bool,
    priority_support: bool,
    sso: bool,
    audit_export: bool,
) -> dict[str, Any]:
    return {
        "runs_per_day": runs_per_day,
        "sends_per_day": sends_per_day,
        "max_actions_per_run": max_actions_per_run,
        "max_integrations": max_integrations,
        "max_team_members": max_team_members,
        "max_contacts": max_contacts,
        "features": {
            "auto_send": auto_send,
            "api_access": api_access,
            "custom_branding": custom_branding,
            "priority_support": priority_support,
            "sso": sso,
            "audit_export": audit_export,
        },
    }


PLANS: dict[str, Plan] = {
    "free": Plan(
        id="free",
        name="Free",
        price_monthly=0,
        limits=_limits(
            runs_per_day=10,
            sends_per_day=5,
            max_actions_per_run=3,
            max_integrations=1,
            max_team_members=1,
            max_contacts=100,
            auto_send=False,
            api_access=False,
            custom_branding=False,
            priority_support=False,
            sso=False,
            audit_export=False,
        ),
    ),
    "starter": Plan(
        id="starter",
        name="Starter",
        price_monthly=29,
        limits=_limits(
            runs_per_day=100,
            sends_per_day=50,
            max_actions_per_run=10,
            max_integrations=3,
            max_team_members=5,
            max_contacts=1000,
            auto_send=True,
            api_access=False,
            custom_branding=False,
            priority_support=False,
            sso=False,
            audit_export=True,
        ),
    ),
    "pro": Plan(
        id="pro",
        name="Pro",
        price_monthly=99,
        limits=_limits(
            runs_per_day=1000,
            sends_per_day=500,
            max_actions_per_run=20,
            max_integrations=10,
            max_team_members=20,
            max_contacts=10000,
            auto_send=True,
            api_access=True,
            custom_branding=True,
            priority_support=True,
            sso=False,
            audit_export=True,
        ),
    ),
    "agency": Plan(
        id="agency",
        name="Agency",
        price_monthly=299,
        limits=_limits(
            runs_per_day=10000,
            sends_per_day=5000,
            max_actions_per_run=50,
            max_integrations=50,
            max_team_members=100,
            max_contacts=100000,
            auto_send=True,
            api_access=True,
            custom_branding=True,
            priority_support=True,
            sso=True,
            audit_export=True,
        ),
    ),
}


def get_plan(plan_id: str | None) -> Plan:
    return PLANS.get(plan_id or "free", PLANS["free"])


def price_ids() -> dict[str, str | None]:
    # Price ids live in settings so each environment can point at its own catalogue.
    settings = get_settings()
    return {
        "free": None,
        "starter": settings.stripe_starter_price_id,
        "pro": settings.stripe_pro_price_id,
        "agency": settings.stripe_agency_price_id,
    }


def plan_for_price(price_id: str | None) -> Plan | None:
    if not price_id:
        return None
    for plan_id, configured in price_ids().items():
        if configured and configured == price_id:
            return PLANS[plan_id]
    return None
