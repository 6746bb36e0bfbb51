from __future__ import annotations

import logging
from typing import Any

import stripe

from app.core.errors import ConfigurationError
from app.core.settings import settings

logger = logging.getLogger(__name__)


class StripeGateway:
    """Thin wrapper over the Stripe calls the billing flows make."""

    def __init__(self, api_key: str | None, api_version: str | None = None) -> None:
        if not api_key:
            raise ConfigurationError("Stripe secret key not configured")
        self._opts: dict[str, Any] = {"api_key": api_key}
        if api_version:
            self._opts["stripe_version"] = api_version

    def create_customer(self, *, email: str, user_id: str) -> str:
        customer = stripe.Customer.create(email=email, metadata={"user_id": user_id}, **self._opts)
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer.id

    def delete_customer(self, customer_id: str) -> None:
        stripe.Customer.delete(customer_id, **self._opts)

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        line_items: list[dict],
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> tuple[str, str]:
        session = stripe.checkout.Session.create(
            customer=customer_id,
            payment_method_types=["card"],
            line_items=line_items,
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            **self._opts,
        )
        return session.id, session.url

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> dict[str, Any]:
        subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel, **self._opts)
        return {
            "id": subscription.id,
            "status": getattr(subscription, "status", None),
            "cancel_at_period_end": getattr(subscription, "cancel_at_period_end", cancel),
            "current_period_end": getattr(subscription, "current_period_end", None),
        }

    def create_portal_session(self, *, customer_id: str, return_url: str) -> str:
        portal = stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url, **self._opts)
        return portal.url


def gateway_from_settings() -> StripeGateway:
    return StripeGateway(settings.stripe_secret_key, settings.stripe_api_version)
