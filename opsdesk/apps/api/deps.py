from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.core.config import get_settings
from opsdesk.core.errors import AuthorizationError, DatabaseError
from opsdesk.persistence.db import get_session
from opsdesk.services.auth.context import (
    OrgContext,
    decode_session_token,
    dev_context_from_headers,
    parse_bearer_token,
    resolve_org_context,
)
from opsdesk.services.auth.roles import role_allows


logger = logging.getLogger(__name__)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_org_context(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> OrgContext:
    settings = get_settings()
    header_value = request.headers.get("Authorization")
    if not header_value and settings.auth_dev_bypass:
        context = dev_context_from_headers(request.headers)
        request.state.org_context = context
        return context

    token = parse_bearer_token(header_value)
    claims = decode_session_token(token)
    requested_org_id = request.headers.get(settings.active_org_header) or None
    try:
        context = await resolve_org_context(
            db,
            actor_id=claims["sub"],
            requested_org_id=requested_org_id,
            email=claims.get("email"),
        )
    except SQLAlchemyError as exc:
        logger.error("org_context_lookup_failed actor_id=%s", claims["sub"], exc_info=exc)
        raise DatabaseError("Authentication unavailable") from exc
    request.state.org_context = context
    return context


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        context: OrgContext = Depends(get_org_context),
    ) -> OrgContext:
        if not role_allows(role=context.role, minimum_role=minimum_role):
            logger.warning(
                "rbac.forbidden actor_id=%s organization_id=%s role=%s required_role=%s path=%s method=%s",
                context.actor_id,
                context.organization_id,
                context.role,
                minimum_role,
                request.url.path,
                request.method,
            )
            raise AuthorizationError()
        return context

    return _dependency
