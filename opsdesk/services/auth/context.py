from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.config import get_settings
from opsdesk.core.errors import AuthenticationError, AuthorizationError
from opsdesk.persistence.repos import organizations as org_repo
from opsdesk.services.auth.roles import normalize_role, role_rank


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrgContext:
    # Explicit per-request identity; every service call receives it instead of ambient state.
    actor_id: str
    organization_id: str
    role: str
    email: str | None = None
    organization_name: str | None = None
    auth_method: str = "jwt"

    def as_dict(self) -> dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "organization_id": self.organization_id,
            "role": self.role,
            "role_rank": role_rank(self.role),
            "email": self.email,
            "organization_name": self.organization_name,
            "auth_method": self.auth_method,
        }


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format for session authentication.
    if not header_value:
        raise AuthenticationError("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Missing or invalid bearer token")
    return parts[1]


def decode_session_token(token: str) -> dict[str, Any]:
    # Verify signature, expiry and audience of provider-issued session tokens.
    settings = get_settings()
    options = {"require": ["sub", "exp"]}
    if settings.auth_jwt_audience is None:
        options["verify_aud"] = False
    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=settings.auth_jwt_algorithms,
            audience=settings.auth_jwt_audience,
            leeway=settings.auth_jwt_leeway_s,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Session expired") from exc
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid session token") from exc
    if not isinstance(claims.get("sub"), str) or not claims["sub"]:
        raise AuthenticationError("Invalid session token")
    return claims


async def resolve_org_context(
    session: AsyncSession,
    *,
    actor_id: str,
    requested_org_id: str | None = None,
    email: str | None = None,
) -> OrgContext:
    """Resolve the actor's active organization and role from stored membership.

    ``requested_org_id`` is only a hint: it is honoured when the actor holds a
    profile in that organization and otherwise refused with the same error as
    an unknown organization, so org ids cannot be enumerated.
    """
    if requested_org_id:
        profile = await org_repo.get_member_profile(
            session, profile_id=actor_id, organization_id=requested_org_id
        )
    else:
        profile = await org_repo.get_profile(session, actor_id)
    if profile is None:
        logger.info("org_context_denied actor_id=%s requested_org_id=%s", actor_id, requested_org_id)
        raise AuthorizationError()
    organization = await org_repo.get_organization(session, profile.organization_id)
    if organization is None:
        raise AuthorizationError()
    try:
        role = normalize_role(profile.role)
    except ValueError:
        # Keep the raw value; it ranks as 0 and fails every gate.
        role = profile.role
    return OrgContext(
        actor_id=profile.id,
        organization_id=organization.id,
        role=role,
        email=profile.email or email,
        organization_name=organization.name,
    )


def dev_context_from_headers(headers) -> OrgContext:
    # Allow header-built contexts only when explicitly enabled for local dev.
    settings = get_settings()
    org_id = headers.get(settings.active_org_header)
    if not org_id:
        raise AuthenticationError(f"{settings.active_org_header} header is required in dev bypass mode")
    actor_id = headers.get("X-User-Id") or f"dev-{org_id}"
    role_header = headers.get("X-Role", "admin")
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise AuthenticationError(str(exc)) from exc
    return OrgContext(actor_id=actor_id, organization_id=org_id, role=role, auth_method="dev_bypass")
