from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from opsdesk.domain.models import BillingEvent


async def claim_event(
    session: AsyncSession,
    *,
    stripe_event_id: str,
    event_type: str,
    payload: dict[str, Any] | None,
) -> BillingEvent | None:
    # The unique stripe_event_id makes insert the atomic check-and-set; None means a replay.
    event = BillingEvent(
        stripe_event_id=stripe_event_id,
        event_type=event_type,
        payload=payload,
        processed=False,
    )
    try:
        async with session.begin_nested():
            session.add(event)
            await session.flush()
    except IntegrityError:
        return None
    return event


async def get_event(session: AsyncSession, stripe_event_id: str) -> BillingEvent | None:
    result = await session.execute(
        select(BillingEvent).where(BillingEvent.stripe_event_id == stripe_event_id)
    )
    return result.scalar_one_or_none()
