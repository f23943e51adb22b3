from __future__ import annotations

import json
import logging
import time
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.apps.api.deps import get_db
from opsdesk.core.config import get_settings
from opsdesk.services.billing.webhook import SIGNATURE_HEADER, handle_billing_event, verify_stripe_signature
from opsdesk.services.email.processor import process_inbound_email
from opsdesk.services.email.signature import verify_email_signature


logger = logging.getLogger(__name__)

# Provider callbacks authenticate by signature, not by session.
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _processing_failed() -> HTTPException:
    # 5xx tells the provider to retry; nothing from the failed attempt was kept.
    return HTTPException(
        status_code=500,
        detail={"code": "WEBHOOK_PROCESSING_FAILED", "message": "Webhook processing failed"},
    )


@router.post("/stripe")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    # Raw body is required; re-serialized JSON would not match the signature.
    payload = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("stripe_signature_missing")
        raise HTTPException(
            status_code=400,
            detail={"code": "WEBHOOK_SIGNATURE_MISSING", "message": "Missing signature"},
        )
    event = verify_stripe_signature(payload, signature)
    logger.info("stripe_event_received event_id=%s event_type=%s", event["id"], event["type"])
    try:
        result = await handle_billing_event(db, event, request=request)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error(
            "stripe_event_failed event_id=%s event_type=%s",
            event["id"],
            event["type"],
            exc_info=exc,
        )
        raise _processing_failed() from exc
    return JSONResponse(content=result.as_dict(), status_code=200)


async def _read_email_payload(request: Request) -> dict[str, Any]:
    content_type = (request.headers.get("content-type") or "").lower()
    if "multipart/form-data" in content_type or "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        # Attachment parts arrive as uploads; only text fields are parsed.
        return {key: value for key, value in form.multi_items() if isinstance(value, str)}
    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError as exc:
        if "application/json" in content_type:
            raise HTTPException(
                status_code=400,
                detail={"code": "INVALID_PAYLOAD", "message": "Malformed JSON payload"},
            ) from exc
        logger.warning("email_webhook_unsupported_content_type content_type=%s", content_type)
        raise HTTPException(
            status_code=415,
            detail={"code": "UNSUPPORTED_MEDIA_TYPE", "message": "Unsupported content type"},
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400,
            detail={"code": "INVALID_PAYLOAD", "message": "Payload must be an object"},
        )
    return payload


@router.post("/email")
async def email_webhook(request: Request, db: AsyncSession = Depends(get_db)) -> JSONResponse:
    settings = get_settings()
    if not settings.email_webhook_secret:
        logger.error("email_webhook_secret_missing")
        raise HTTPException(
            status_code=500,
            detail={"code": "WEBHOOK_NOT_CONFIGURED", "message": "Webhook not configured"},
        )
    started = time.monotonic()
    provider = settings.email_provider
    verify_email_signature(provider, settings.email_webhook_secret, request.headers)
    payload = await _read_email_payload(request)
    try:
        result = await process_inbound_email(db, provider=provider, payload=payload, request=request)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("email_webhook_failed provider=%s", provider, exc_info=exc)
        raise _processing_failed() from exc
    duration_ms = round((time.monotonic() - started) * 1000.0, 2)
    if not result.success:
        # Non-retryable: acknowledge so the provider stops redelivering.
        logger.warning("email_webhook_unprocessed error=%s duration_ms=%s", result.error, duration_ms)
    else:
        logger.info(
            "email_webhook_handled email_id=%s skipped=%s duration_ms=%s",
            result.email_id,
            result.skipped,
            duration_ms,
        )
    return JSONResponse(content=result.as_dict(), status_code=200)
