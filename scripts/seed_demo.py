from __future__ import annotations

import asyncio
from datetime import timedelta
import sys

from sqlalchemy.exc import SQLAlchemyError

from opsdesk.domain.models import AgentRun, Approval, Organization, Profile
from opsdesk.domain.types import utc_now
from opsdesk.persistence.db import SessionLocal
from opsdesk.services.billing.plans import get_plan


DEMO_ORG_ID = "00000000-0000-4000-8000-000000000001"
DEMO_ORG_NAME = "Demo Ops"
# One profile per role so every gate can be exercised locally.
DEMO_PROFILES = (
    ("00000000-0000-4000-8000-0000000000a1", "viewer"),
    ("00000000-0000-4000-8000-0000000000a2", "member"),
    ("00000000-0000-4000-8000-0000000000a3", "admin"),
    ("00000000-0000-4000-8000-0000000000a4", "owner"),
)
DEMO_RUN_ID = "00000000-0000-4000-8000-0000000000b1"
DEMO_APPROVAL_ID = "00000000-0000-4000-8000-0000000000c1"


def build_demo_actions() -> list[dict[str, object]]:
    return [
        {"type": "send_email", "to": "client@example.com", "subject": "Weekly report"},
        {"type": "create_task", "title": "Follow up on invoice"},
    ]


async def seed_demo() -> int:
    async with SessionLocal() as session:
        organization = await session.get(Organization, DEMO_ORG_ID)
        if organization is not None:
            print("Demo organization already seeded; skipping.")
            return 0

        free = get_plan("free")
        session.add(Organization(id=DEMO_ORG_ID, name=DEMO_ORG_NAME, plan=free.id, plan_limits=free.limits))
        await session.flush()
        for profile_id, role in DEMO_PROFILES:
            session.add(
                Profile(
                    id=profile_id,
                    organization_id=DEMO_ORG_ID,
                    email=f"{role}@demo.opsdesk.app",
                    full_name=f"Demo {role.title()}",
                    role=role,
                )
            )
        session.add(
            AgentRun(
                id=DEMO_RUN_ID,
                organization_id=DEMO_ORG_ID,
                agent_type="planner",
                input={"goal": "Send the weekly client report"},
                status="awaiting_approval",
                created_by=DEMO_PROFILES[1][0],
            )
        )
        await session.flush()
        session.add(
            Approval(
                id=DEMO_APPROVAL_ID,
                organization_id=DEMO_ORG_ID,
                agent_run_id=DEMO_RUN_ID,
                requested_actions=build_demo_actions(),
                risk_level="medium",
                status="pending",
                requested_by=DEMO_PROFILES[1][0],
                expires_at=utc_now() + timedelta(days=1),
            )
        )
        await session.commit()
        print(f"Seeded demo organization {DEMO_ORG_ID} with {len(DEMO_PROFILES)} profiles.")
        return 0


def main() -> int:
    # Exit non-zero on database errors so setup scripts can detect them.
    try:
        return asyncio.run(seed_demo())
    except SQLAlchemyError as exc:
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
