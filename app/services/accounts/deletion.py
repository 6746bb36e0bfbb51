from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AccountDeletionError, ActiveSubscriptionError
from app.db import models
from app.services.identity.service import delete_identity
from app.services.payments.gateway import StripeGateway
from app.services.subscriptions.service import get_profile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeletionStep:
    name: str
    run: Callable[[], Awaitable[None]]
    fatal: bool = False
    failure_message: str = ""


@dataclass
class CascadeReport:
    completed: list[str] = field(default_factory=list)
    failures: list[tuple[str, str]] = field(default_factory=list)


async def run_cascade(session: AsyncSession, steps: Sequence[DeletionStep]) -> CascadeReport:
    """Run `steps` in order, committing after each one.

    A failing non-fatal step is rolled back and skipped. A failing fatal step
    aborts the rest with AccountDeletionError; earlier steps stay committed.
    """
    report = CascadeReport()
    try:
        for step in steps:
            try:
                await step.run()
                await session.commit()
            except Exception as e:
                await session.rollback()
                if step.fatal:
                    logger.exception("Fatal account deletion step %s failed", step.name)
                    raise AccountDeletionError(f"Account deletion failed: {step.failure_message or step.name}") from e
                logger.exception("Account deletion step %s failed, continuing", step.name)
                report.failures.append((step.name, str(e)))
            else:
                report.completed.append(step.name)
    finally:
        if report.failures:
            logger.error(
                "Account deletion skipped %d step(s): %s",
                len(report.failures),
                "; ".join(f"{name}: {err}" for name, err in report.failures),
            )
    return report


def build_deletion_steps(
    session: AsyncSession,
    user_id: str,
    *,
    billing_customer_id: str | None,
    gateway: StripeGateway | None,
) -> list[DeletionStep]:
    async def delete_chat_messages() -> None:
        owned_sessions = select(models.ChatSession.id).where(models.ChatSession.user_id == user_id)
        await session.execute(
            delete(models.ChatMessage)
            .where(models.ChatMessage.session_id.in_(owned_sessions))
            .execution_options(synchronize_session=False)
        )

    async def delete_chat_sessions() -> None:
        await session.execute(delete(models.ChatSession).where(models.ChatSession.user_id == user_id))

    async def delete_food_logs() -> None:
        await session.execute(delete(models.FoodLog).where(models.FoodLog.user_id == user_id))

    async def delete_subscription_events() -> None:
        await session.execute(delete(models.SubscriptionEvent).where(models.SubscriptionEvent.user_id == user_id))

    async def delete_profile() -> None:
        await session.execute(delete(models.UserProfile).where(models.UserProfile.user_id == user_id))

    async def delete_user_record() -> None:
        await session.execute(delete(models.User).where(models.User.id == user_id))

    async def delete_billing_customer() -> None:
        if not gateway or not billing_customer_id:
            return
        gateway.delete_customer(billing_customer_id)
        logger.info("Deleted Stripe customer %s", billing_customer_id)

    async def delete_auth_identity() -> None:
        await delete_identity(session, user_id)

    return [
        DeletionStep("chat_messages", delete_chat_messages),
        DeletionStep("chat_sessions", delete_chat_sessions),
        DeletionStep("food_logs", delete_food_logs),
        DeletionStep("subscription_events", delete_subscription_events),
        DeletionStep("user_profile", delete_profile, fatal=True, failure_message="Failed to delete user profile"),
        DeletionStep("user_record", delete_user_record, fatal=True, failure_message="Failed to delete user record"),
        DeletionStep("billing_customer", delete_billing_customer),
        DeletionStep(
            "auth_identity",
            delete_auth_identity,
            fatal=True,
            failure_message="Failed to delete authentication record",
        ),
    ]


async def delete_account(session: AsyncSession, user_id: str, gateway: StripeGateway | None = None) -> CascadeReport:
    """Delete everything owned by `user_id`, refusing while a subscription is active."""
    logger.info("Processing account deletion for user %s", user_id)
    try:
        profile = await get_profile(session, user_id)
    except SQLAlchemyError as e:
        logger.exception("Error fetching user profile for %s", user_id)
        raise AccountDeletionError("Failed to fetch user profile") from e

    if profile and profile.subscription_status == "active":
        raise ActiveSubscriptionError("Cannot delete account with active subscription. Please cancel your subscription first.")

    billing_customer_id = profile.billing_customer_id if profile else None
    steps = build_deletion_steps(session, user_id, billing_customer_id=billing_customer_id, gateway=gateway)
    report = await run_cascade(session, steps)
    logger.info("Successfully deleted account for user %s", user_id)
    return report
