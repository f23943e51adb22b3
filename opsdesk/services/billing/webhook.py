from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from typing import Any, Awaitable, Callable

import stripe
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from opsdesk.core.config import get_settings
from opsdesk.core.errors import BillingEventError, ExternalServiceError, WebhookVerificationError
from opsdesk.domain.models import Organization
from opsdesk.domain.types import utc_now
from opsdesk.persistence.repos import billing_events as billing_repo
from opsdesk.persistence.repos import organizations as org_repo
from opsdesk.services.audit import record_event
from opsdesk.services.billing.plans import get_plan, plan_for_price


logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
BILLING_ACTOR = "stripe"
MALFORMED_OBJECT_ERROR = "Malformed event object"

# Provider subscription states collapsed onto the organization's billing status.
SUBSCRIPTION_STATUS_MAP: dict[str, str] = {
    "active": "active",
    "past_due": "past_due",
    "canceled": "canceled",
    "trialing": "trialing",
    "incomplete": "incomplete",
    "incomplete_expired": "canceled",
    "unpaid": "past_due",
    "paused": "canceled",
}


class WebhookNotConfiguredError(ExternalServiceError):
    code = "WEBHOOK_NOT_CONFIGURED"
    status_code = 503
    default_message = "Webhook verification not configured"


@dataclass(frozen=True)
class BillingWebhookResult:
    event_id: str
    event_type: str
    processed: bool
    duplicate: bool = False
    organization_id: str | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "received": True,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "processed": self.processed,
            "duplicate": self.duplicate,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def verify_stripe_signature(payload: bytes, signature: str | None) -> dict[str, Any]:
    """Verify a Stripe webhook and return the decoded event.

    Fails closed: a missing secret, missing header, stale timestamp or bad
    signature all raise before anything is parsed or processed.
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("stripe_webhook_secret_missing")
        raise WebhookNotConfiguredError()
    if not signature:
        raise WebhookVerificationError("Missing signature")
    try:
        text = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(
            text,
            signature,
            settings.stripe_webhook_secret,
            settings.stripe_webhook_tolerance_s,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("stripe_signature_invalid error=%s", exc)
        raise WebhookVerificationError() from exc
    try:
        event = json.loads(text)
    except ValueError as exc:
        raise WebhookVerificationError("Invalid payload") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise WebhookVerificationError("Invalid payload")
    return event


def _customer_id(obj: dict[str, Any]) -> str | None:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer or None


def _period_end(subscription: dict[str, Any]) -> datetime | None:
    # Newer API versions moved the period end onto subscription items.
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as exc:
        raise BillingEventError("Invalid subscription period end") from exc


def _price_id(subscription: dict[str, Any]) -> str | None:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, dict) else price


async def _handle_checkout_completed(session: AsyncSession, obj: dict[str, Any]) -> str | None:
    org_id = (obj.get("metadata") or {}).get("org_id")
    if not org_id:
        logger.warning("stripe_checkout_missing_org session_id=%s", obj.get("id"))
        return None
    organization = await org_repo.get_organization(session, org_id)
    if organization is None:
        raise BillingEventError("Checkout references an unknown organization")
    customer_id = _customer_id(obj)
    if not customer_id:
        raise BillingEventError("Checkout session missing customer")
    organization.stripe_customer_id = customer_id
    billing_email = obj.get("customer_email") or (obj.get("customer_details") or {}).get("email")
    if billing_email:
        organization.billing_email = billing_email
    logger.info("stripe_checkout_completed organization_id=%s customer_id=%s", org_id, customer_id)
    return organization.id


async def _handle_subscription_updated(session: AsyncSession, obj: dict[str, Any]) -> str | None:
    customer_id = _customer_id(obj)
    if not customer_id:
        raise BillingEventError("Subscription missing customer")
    organization = await org_repo.get_by_stripe_customer(session, customer_id)
    if organization is None:
        logger.warning("stripe_customer_unknown customer_id=%s", customer_id)
        return None
    price_id = _price_id(obj)
    if not price_id:
        raise BillingEventError("Subscription missing price")
    period_end = _period_end(obj)
    plan = plan_for_price(price_id) or get_plan("free")
    status = SUBSCRIPTION_STATUS_MAP.get(str(obj.get("status")), "none")
    organization.plan = plan.id
    organization.plan_limits = plan.limits
    organization.stripe_subscription_id = obj.get("id")
    organization.subscription_status = status
    organization.subscription_period_end = period_end
    logger.info(
        "stripe_subscription_updated organization_id=%s plan=%s status=%s",
        organization.id,
        plan.id,
        status,
    )
    return organization.id


async def _handle_subscription_deleted(session: AsyncSession, obj: dict[str, Any]) -> str | None:
    subscription_id = obj.get("id")
    if not subscription_id:
        raise BillingEventError("Subscription missing id")
    organization = await org_repo.get_by_stripe_subscription(session, subscription_id)
    if organization is None:
        logger.warning("stripe_subscription_unknown subscription_id=%s", subscription_id)
        return None
    free = get_plan("free")
    organization.plan = free.id
    organization.plan_limits = free.limits
    organization.subscription_status = "canceled"
    organization.stripe_subscription_id = None
    logger.info("stripe_subscription_canceled organization_id=%s", organization.id)
    return organization.id


async def _organization_for_invoice(session: AsyncSession, obj: dict[str, Any]) -> Organization | None:
    customer_id = _customer_id(obj)
    if not customer_id:
        return None
    return await org_repo.get_by_stripe_customer(session, customer_id)


async def _handle_payment_succeeded(session: AsyncSession, obj: dict[str, Any]) -> str | None:
    organization = await _organization_for_invoice(session, obj)
    if organization is None:
        return None
    # One-off invoices carry no subscription and leave the status alone.
    if obj.get("subscription") or (obj.get("parent") or {}).get("subscription_details"):
        organization.subscription_status = "active"
    logger.info("stripe_payment_succeeded organization_id=%s invoice_id=%s", organization.id, obj.get("id"))
    return organization.id


async def _handle_payment_failed(session: AsyncSession, obj: dict[str, Any]) -> str | None:
    organization = await _organization_for_invoice(session, obj)
    if organization is None:
        return None
    organization.subscription_status = "past_due"
    logger.warning("stripe_payment_failed organization_id=%s invoice_id=%s", organization.id, obj.get("id"))
    return organization.id


EVENT_HANDLERS: dict[str, Callable[[AsyncSession, dict[str, Any]], Awaitable[str | None]]] = {
    "checkout.session.completed": _handle_checkout_completed,
    "customer.subscription.created": _handle_subscription_updated,
    "customer.subscription.updated": _handle_subscription_updated,
    "customer.subscription.deleted": _handle_subscription_deleted,
    "invoice.payment_succeeded": _handle_payment_succeeded,
    "invoice.payment_failed": _handle_payment_failed,
}


async def handle_billing_event(
    session: AsyncSession,
    event: dict[str, Any],
    *,
    request: Request | None = None,
) -> BillingWebhookResult:
    """Apply a verified billing event at most once.

    The ``billing_events`` row is inserted in the same transaction as the
    effect, so its unique event id decides which delivery wins. A
    ``BillingEventError`` rolls back only the effect and the event is recorded
    with the error; anything else propagates so the caller can roll back and
    let the provider retry.
    """
    event_id = str(event["id"])
    event_type = str(event["type"])
    data = event.get("data")
    raw_object = data.get("object") if isinstance(data, dict) else None
    obj: dict[str, Any] = raw_object if isinstance(raw_object, dict) else {}

    record = await billing_repo.claim_event(
        session,
        stripe_event_id=event_id,
        event_type=event_type,
        payload=raw_object if isinstance(raw_object, dict) else None,
    )
    if record is None:
        await session.rollback()
        logger.info("stripe_event_duplicate event_id=%s event_type=%s", event_id, event_type)
        return BillingWebhookResult(event_id=event_id, event_type=event_type, processed=True, duplicate=True)

    org_id: str | None = None
    error: str | None = None
    handler = EVENT_HANDLERS.get(event_type)
    if not isinstance(raw_object, dict):
        error = MALFORMED_OBJECT_ERROR
        logger.error(
            "stripe_event_malformed event_id=%s event_type=%s object_type=%s",
            event_id,
            event_type,
            type(raw_object).__name__,
        )
    elif handler is None:
        logger.debug("stripe_event_unhandled event_type=%s", event_type)
    else:
        try:
            async with session.begin_nested():
                try:
                    org_id = await handler(session, obj)
                except (TypeError, AttributeError) as exc:
                    # Nested fields of the wrong shape.
                    raise BillingEventError(MALFORMED_OBJECT_ERROR) from exc
                await session.flush()
        except BillingEventError as exc:
            error = exc.message
            logger.error(
                "stripe_event_unprocessable event_id=%s event_type=%s error=%s",
                event_id,
                event_type,
                error,
            )

    record.organization_id = org_id
    record.processed = True
    record.processing_error = error
    record.processed_at = utc_now()
    await session.commit()

    if org_id:
        await record_event(
            organization_id=org_id,
            actor_id=BILLING_ACTOR,
            action=f"billing.{event_type}",
            resource_type="subscription",
            resource_id=obj.get("id") if isinstance(obj.get("id"), str) else None,
            metadata={"stripe_event_id": event_id, "event_type": event_type},
            request=request,
        )
    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        processed=error is None,
        organization_id=org_id,
        error=error,
    )
