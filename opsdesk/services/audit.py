from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.domain.models import AuditLog
from opsdesk.domain.types import utc_now
from opsdesk.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "signature", "cookie"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def record_event(
    *,
    organization_id: str,
    actor_id: str,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    request: Request | None = None,
    session: AsyncSession | None = None,
) -> bool:
    """Append one audit row for an already committed state change.

    The write happens in its own transaction (or in ``session`` when the caller
    owns one and commits it), so a failure here never rolls back the primary
    action. Failures are logged at ERROR and reported through the return value.
    """
    request_ctx = get_request_context(request)
    sanitized_metadata = sanitize_metadata(metadata or {})
    if request_ctx["request_id"]:
        sanitized_metadata.setdefault("request_id", request_ctx["request_id"])
    entry = AuditLog(
        organization_id=organization_id,
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        metadata_json=sanitized_metadata,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        created_at=utc_now(),
    )

    if session is not None:
        try:
            async with session.begin_nested():
                session.add(entry)
        except SQLAlchemyError as exc:
            logger.error(
                "audit_write_failed action=%s organization_id=%s resource_id=%s",
                action,
                organization_id,
                resource_id,
                exc_info=exc,
            )
            return False
        return True

    async with SessionLocal() as audit_session:
        try:
            audit_session.add(entry)
            await audit_session.commit()
        except SQLAlchemyError as exc:
            await audit_session.rollback()
            logger.error(
                "audit_write_failed action=%s organization_id=%s resource_id=%s",
                action,
                organization_id,
                resource_id,
                exc_info=exc,
            )
            return False
    return True
