from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import InvalidAction, NoBillingCustomer, NoSubscription, ProfileNotFound, ValidationFailed
from app.core.settings import settings
from app.db import models
from app.services.payments.gateway import StripeGateway
from app.services.payments.plans import get_plan, line_items_for_plan
from app.services.subscriptions.service import get_profile

logger = logging.getLogger(__name__)

MANAGE_ACTIONS = frozenset({"cancel", "reactivate", "get_portal_url"})


@dataclass
class CheckoutResult:
    session_id: str
    url: str


async def _require_profile(session: AsyncSession, user_id: str) -> models.UserProfile:
    profile = await get_profile(session, user_id)
    if profile:
        return profile
    if not await session.get(models.User, user_id):
        raise ProfileNotFound("User profile not found")
    profile = models.UserProfile(user_id=user_id)
    session.add(profile)
    await session.commit()
    return profile


async def ensure_billing_customer(session: AsyncSession, gateway: StripeGateway, *, user_id: str, email: str) -> str:
    """Return the user's billing customer id, creating it at Stripe on first use.

    The id is committed before returning. A concurrent request that already
    stored an id wins; the customer created here is then discarded.
    """
    profile = await _require_profile(session, user_id)
    if profile.billing_customer_id:
        return profile.billing_customer_id

    customer_id = gateway.create_customer(email=email, user_id=user_id)
    res = await session.execute(
        update(models.UserProfile)
        .where(models.UserProfile.user_id == user_id, models.UserProfile.billing_customer_id.is_(None))
        .values(billing_customer_id=customer_id, updated_at=models.utcnow())
    )
    await session.commit()
    if res.rowcount == 1:
        profile.billing_customer_id = customer_id
        return customer_id

    await session.refresh(profile)
    winner = profile.billing_customer_id
    logger.warning("User %s already has customer %s, discarding duplicate %s", user_id, winner, customer_id)
    try:
        gateway.delete_customer(customer_id)
    except Exception:
        logger.exception("Failed to delete duplicate Stripe customer %s", customer_id)
    return winner


async def create_checkout_session(
    session: AsyncSession,
    gateway: StripeGateway,
    *,
    user_id: str,
    email: str,
    plan_type: str,
    success_url: str,
    cancel_url: str,
) -> CheckoutResult:
    plan = get_plan(plan_type)
    if not success_url or not cancel_url:
        raise ValidationFailed("successUrl and cancelUrl are required")

    customer_id = await ensure_billing_customer(session, gateway, user_id=user_id, email=email)
    metadata = {"user_id": user_id, "plan_type": plan.plan_type}
    session_id, url = gateway.create_checkout_session(
        customer_id=customer_id,
        line_items=line_items_for_plan(plan),
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
    )
    logger.info("Created checkout session %s for user %s (%s)", session_id, user_id, plan.plan_type)
    return CheckoutResult(session_id=session_id, url=url)


def default_return_url() -> str:
    return f"{settings.base_url.rstrip('/')}{settings.portal_return_path}"


async def manage_subscription(
    session: AsyncSession,
    gateway: StripeGateway,
    *,
    user_id: str,
    action: str,
    return_url: str | None = None,
) -> dict[str, Any]:
    if action not in MANAGE_ACTIONS:
        raise InvalidAction("Invalid action")

    profile = await get_profile(session, user_id)
    if not profile:
        raise ProfileNotFound("User profile not found")
    if not profile.billing_customer_id:
        raise NoBillingCustomer("No Stripe customer found")

    if action == "get_portal_url":
        url = gateway.create_portal_session(
            customer_id=profile.billing_customer_id,
            return_url=return_url or default_return_url(),
        )
        return {"success": True, "url": url}

    if not profile.subscription_id:
        raise NoSubscription("No active subscription found" if action == "cancel" else "No subscription found")

    if action == "cancel":
        subscription = gateway.set_cancel_at_period_end(profile.subscription_id, True)
        logger.info("Subscription %s set to cancel at period end for user %s", profile.subscription_id, user_id)
        return {
            "success": True,
            "message": "Subscription will be canceled at the end of the current period",
            "subscription": subscription,
        }

    subscription = gateway.set_cancel_at_period_end(profile.subscription_id, False)
    logger.info("Subscription %s reactivated for user %s", profile.subscription_id, user_id)
    return {"success": True, "message": "Subscription reactivated", "subscription": subscription}
