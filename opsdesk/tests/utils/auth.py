from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import jwt

from opsdesk.core.config import get_settings
from opsdesk.domain.models import Organization, Profile
from opsdesk.persistence.db import SessionLocal


def mint_session_token(
    subject: str,
    *,
    email: str | None = None,
    expires_in: timedelta = timedelta(minutes=10),
    audience: str | None = "authenticated",
    secret: str | None = None,
) -> str:
    # Sign tokens the way the auth provider does for dashboard sessions.
    claims: dict[str, object] = {
        "sub": subject,
        "exp": datetime.now(timezone.utc) + expires_in,
    }
    if audience is not None:
        claims["aud"] = audience
    if email is not None:
        claims["email"] = email
    return jwt.encode(claims, secret or get_settings().auth_jwt_secret, algorithm="HS256")


async def create_test_org(*, name: str = "Acme Ops", organization_id: str | None = None) -> str:
    org_id = organization_id or str(uuid4())
    async with SessionLocal() as session:
        session.add(Organization(id=org_id, name=name))
        await session.commit()
    return org_id


async def create_test_member(
    *,
    organization_id: str,
    role: str,
    profile_id: str | None = None,
    email: str | None = None,
) -> tuple[str, dict[str, str]]:
    # Provision a profile and return it with ready-to-use auth headers.
    member_id = profile_id or str(uuid4())
    async with SessionLocal() as session:
        session.add(
            Profile(
                id=member_id,
                organization_id=organization_id,
                email=email or f"{role}-{member_id[:8]}@example.com",
                role=role,
            )
        )
        await session.commit()
    token = mint_session_token(member_id)
    headers = {
        "Authorization": f"Bearer {token}",
        get_settings().active_org_header: organization_id,
    }
    return member_id, headers
