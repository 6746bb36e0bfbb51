from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from types import MappingProxyType
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidSignature
from app.core.settings import settings
from app.services.subscriptions import service as reconciler
from app.services.subscriptions.audit import record_event
from app.services.webhooks.events import WebhookEvent, parse_event
from app.services.webhooks.signature import SignatureVerifier

logger = logging.getLogger(__name__)

EventHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[Any]]

EVENT_HANDLERS: Mapping[str, EventHandler] = MappingProxyType(
    {
        "checkout.session.completed": reconciler.apply_checkout_completed,
        "customer.subscription.created": reconciler.apply_subscription_created,
        "customer.subscription.updated": reconciler.apply_subscription_updated,
        "customer.subscription.deleted": reconciler.apply_subscription_deleted,
        "invoice.payment_succeeded": reconciler.apply_invoice_payment_succeeded,
        "invoice.payment_failed": reconciler.apply_invoice_payment_failed,
    }
)


class WebhookProcessor:
    def __init__(self, verifier: SignatureVerifier, handlers: Mapping[str, EventHandler] = EVENT_HANDLERS) -> None:
        self._verifier = verifier
        self._handlers = handlers

    async def process(self, session: AsyncSession, body: bytes, signature: str | None) -> WebhookEvent:
        """Verify, parse and apply one webhook delivery.

        Raises InvalidSignature or MalformedEvent before anything is written.
        Errors from the event handler propagate after the audit row is written.
        """
        if not signature:
            raise InvalidSignature("No Stripe signature found")
        if not self._verifier.verify(body, signature):
            logger.error("Webhook signature verification failed")
            raise InvalidSignature("Webhook signature verification failed")

        event = parse_event(body)
        logger.info("Received Stripe webhook %s (%s)", event.type, event.id)
        await self.dispatch(session, event)
        return event

    async def dispatch(self, session: AsyncSession, event: WebhookEvent) -> None:
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled event type: %s", event.type)
            await record_event(session, event)
            return

        try:
            await handler(session, event.object)
            await session.commit()
        except Exception:
            logger.exception("Error handling %s event %s", event.type, event.id)
            await session.rollback()
            await record_event(session, event)
            raise
        await record_event(session, event)


def processor_from_settings() -> WebhookProcessor:
    verifier = SignatureVerifier(settings.stripe_webhook_secret, settings.stripe_webhook_tolerance_seconds)
    return WebhookProcessor(verifier)
