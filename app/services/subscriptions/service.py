from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db import models
from app.services.payments.plans import PLAN_TYPES

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = frozenset({"active", "trialing"})


def is_subscription_active(profile: models.UserProfile | None) -> bool:
    if not profile:
        return False
    return profile.subscription_status in ACTIVE_STATUSES


async def get_profile(session: AsyncSession, user_id: str) -> models.UserProfile | None:
    q = select(models.UserProfile).where(models.UserProfile.user_id == user_id)
    res = await session.execute(q)
    return res.scalars().first()


async def find_profile_by_subscription_id(session: AsyncSession, subscription_id: str) -> models.UserProfile | None:
    q = select(models.UserProfile).where(models.UserProfile.subscription_id == subscription_id)
    res = await session.execute(q)
    return res.scalars().first()


async def resolve_user_id(session: AsyncSession, obj: dict[str, Any]) -> str | None:
    """Best-effort owner of an event object: metadata first, then subscription id."""
    user_id = metadata_of(obj).get("user_id")
    if user_id:
        return user_id
    subscription_id = subscription_id_of(obj)
    if not subscription_id:
        return None
    profile = await find_profile_by_subscription_id(session, subscription_id)
    return profile.user_id if profile else None


# Event object accessors


def metadata_of(obj: dict[str, Any]) -> dict[str, Any]:
    meta = obj.get("metadata")
    return meta if isinstance(meta, dict) else {}


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return value if isinstance(value, str) and value else None


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    sub_id = _object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    # API versions from 2025 nest it under the invoice parent.
    parent = invoice.get("parent")
    if not isinstance(parent, dict):
        return None
    details = parent.get("subscription_details")
    if not isinstance(details, dict):
        return None
    return _object_id(details.get("subscription"))


def subscription_id_of(obj: dict[str, Any]) -> str | None:
    kind = obj.get("object")
    if kind == "subscription":
        return _object_id(obj.get("id"))
    if kind == "invoice":
        return invoice_subscription_id(obj)
    return _object_id(obj.get("subscription"))


def epoch_to_datetime(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        logger.warning("Ignoring unparseable epoch timestamp %r", value)
        return None


def period_bounds(subscription: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items and isinstance(items[0], dict):
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return epoch_to_datetime(start), epoch_to_datetime(end)


def _status_of(subscription: dict[str, Any]) -> str:
    status = subscription.get("status") or "inactive"
    if status not in models.SUBSCRIPTION_STATUSES:
        logger.warning("Unknown subscription status %r on %s, storing as inactive", status, subscription.get("id"))
        return "inactive"
    return status


def _touch(profile: models.UserProfile) -> None:
    profile.updated_at = models.utcnow()


async def _profile_for_user(session: AsyncSession, user_id: str) -> models.UserProfile | None:
    profile = await get_profile(session, user_id)
    if profile:
        return profile
    user = await session.get(models.User, user_id)
    if not user:
        return None
    profile = models.UserProfile(user_id=user_id)
    session.add(profile)
    return profile


async def _resolve_subscription_owner(session: AsyncSession, subscription: dict[str, Any]) -> models.UserProfile | None:
    subscription_id = _object_id(subscription.get("id"))
    if not subscription_id:
        return None
    user_id = metadata_of(subscription).get("user_id")
    if user_id:
        profile = await _profile_for_user(session, user_id)
        if profile and profile.subscription_id and profile.subscription_id != subscription_id:
            logger.warning(
                "Subscription %s does not match current subscription %s of user %s, skipping",
                subscription_id,
                profile.subscription_id,
                user_id,
            )
            return None
        return profile
    return await find_profile_by_subscription_id(session, subscription_id)


# Reconciler operations. Each writes only the fields owned by its event type,
# so re-applying an event leaves the record unchanged.


async def apply_checkout_completed(session: AsyncSession, checkout: dict[str, Any]) -> models.UserProfile | None:
    meta = metadata_of(checkout)
    user_id = meta.get("user_id")
    plan_type = meta.get("plan_type")
    if not user_id or not plan_type:
        logger.warning("Checkout session %s is missing user_id or plan_type metadata", checkout.get("id"))
        return None
    if plan_type not in PLAN_TYPES:
        logger.warning("Checkout session %s has unknown plan_type %r", checkout.get("id"), plan_type)
        return None
    subscription_id = _object_id(checkout.get("subscription"))
    if not subscription_id:
        logger.warning("Checkout session %s completed without a subscription", checkout.get("id"))
        return None

    profile = await _profile_for_user(session, user_id)
    if not profile:
        logger.warning("Checkout session %s references unknown user %s", checkout.get("id"), user_id)
        return None

    logger.info("Processing checkout completion for user %s with plan %s", user_id, plan_type)
    profile.subscription_status = "active"
    profile.subscription_id = subscription_id
    profile.plan_type = plan_type
    customer_id = _object_id(checkout.get("customer"))
    if customer_id and not profile.billing_customer_id:
        profile.billing_customer_id = customer_id
    _touch(profile)
    await session.flush()
    return profile


async def apply_subscription_created(session: AsyncSession, subscription: dict[str, Any]) -> models.UserProfile | None:
    user_id = metadata_of(subscription).get("user_id")
    if not user_id:
        logger.warning("Subscription %s is missing user_id metadata", subscription.get("id"))
        return None
    subscription_id = _object_id(subscription.get("id"))
    if not subscription_id:
        logger.warning("Subscription created event for user %s carries no subscription id", user_id)
        return None
    profile = await _profile_for_user(session, user_id)
    if not profile:
        logger.warning("Subscription %s references unknown user %s", subscription_id, user_id)
        return None

    logger.info("Processing subscription creation for user %s", user_id)
    profile.subscription_status = _status_of(subscription)
    profile.subscription_id = subscription_id
    plan_type = metadata_of(subscription).get("plan_type")
    if plan_type in PLAN_TYPES:
        profile.plan_type = plan_type
    profile.current_period_start, profile.current_period_end = period_bounds(subscription)
    _touch(profile)
    await session.flush()
    return profile


async def apply_subscription_updated(session: AsyncSession, subscription: dict[str, Any]) -> models.UserProfile | None:
    profile = await _resolve_subscription_owner(session, subscription)
    if not profile:
        logger.warning("Cannot find user for subscription %s", subscription.get("id"))
        return None

    logger.info("Processing subscription update for subscription %s", subscription.get("id"))
    profile.subscription_status = _status_of(subscription)
    if not profile.subscription_id:
        profile.subscription_id = _object_id(subscription.get("id"))
    profile.current_period_start, profile.current_period_end = period_bounds(subscription)
    _touch(profile)
    await session.flush()
    return profile


async def apply_subscription_deleted(session: AsyncSession, subscription: dict[str, Any]) -> models.UserProfile | None:
    profile = await _resolve_subscription_owner(session, subscription)
    if not profile:
        logger.warning("Cannot find user for subscription %s", subscription.get("id"))
        return None

    logger.info("Processing subscription deletion for subscription %s", subscription.get("id"))
    profile.subscription_status = "canceled"
    _touch(profile)
    await session.flush()
    return profile


async def _apply_invoice_status(session: AsyncSession, invoice: dict[str, Any], status: str) -> models.UserProfile | None:
    subscription_id = invoice_subscription_id(invoice)
    if not subscription_id:
        logger.warning("No subscription id on invoice %s", invoice.get("id"))
        return None
    profile = await find_profile_by_subscription_id(session, subscription_id)
    if not profile:
        logger.warning("Cannot find user for subscription %s (invoice %s)", subscription_id, invoice.get("id"))
        return None

    profile.subscription_status = status
    _touch(profile)
    await session.flush()
    return profile


async def apply_invoice_payment_succeeded(session: AsyncSession, invoice: dict[str, Any]) -> models.UserProfile | None:
    profile = await _apply_invoice_status(session, invoice, "active")
    if profile:
        logger.info("Payment succeeded for subscription %s", profile.subscription_id)
    return profile


async def apply_invoice_payment_failed(session: AsyncSession, invoice: dict[str, Any]) -> models.UserProfile | None:
    profile = await _apply_invoice_status(session, invoice, "past_due")
    if profile:
        logger.info("Payment failed for subscription %s", profile.subscription_id)
    return profile
