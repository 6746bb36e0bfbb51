from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import models
from app.services.subscriptions.service import resolve_user_id, subscription_id_of
from app.services.webhooks.events import WebhookEvent

logger = logging.getLogger(__name__)


async def _already_recorded(session: AsyncSession, event_id: str) -> bool:
    q = select(models.SubscriptionEvent.id).where(models.SubscriptionEvent.event_id == event_id)
    res = await session.execute(q)
    return res.scalars().first() is not None


async def record_event(session: AsyncSession, event: WebhookEvent) -> models.SubscriptionEvent | None:
    """Append one audit row for `event`. Never raises; the row is optional."""
    try:
        if event.id and await _already_recorded(session, event.id):
            logger.info("Event %s already recorded, skipping audit row", event.id)
            return None

        user_id = await resolve_user_id(session, event.object)
        if user_id and not await session.get(models.User, user_id):
            logger.warning("Event %s names unknown user %s, recording without user", event.id, user_id)
            user_id = None

        row = models.SubscriptionEvent(
            event_id=event.id,
            user_id=user_id,
            subscription_id=subscription_id_of(event.object),
            event_type=event.type,
            raw_payload=event.payload,
            received_at=models.utcnow(),
        )
        session.add(row)
        await session.commit()
        return row
    except Exception:
        logger.exception("Error logging subscription event %s (%s)", event.id, event.type)
        await session.rollback()
        return None
