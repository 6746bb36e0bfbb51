from datetime import datetime, timezone

import pytest

from app.db import models
from app.services.subscriptions import service as reconciler
from conftest import as_utc, epoch

START = epoch(2026, 10, 1)
END = epoch(2026, 11, 1)


def checkout(user_id="user-1", plan_type="steady", subscription="sub_1", customer="cus_1"):
    return {
        "id": "cs_1",
        "object": "checkout.session",
        "customer": customer,
        "subscription": subscription,
        "metadata": {"user_id": user_id, "plan_type": plan_type} if user_id else {},
    }


def subscription(sub_id="sub_1", status="active", metadata=None, start=START, end=END):
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "metadata": metadata or {},
        "current_period_start": start,
        "current_period_end": end,
    }


def invoice(sub_id="sub_1"):
    return {"id": "in_1", "object": "invoice", "subscription": sub_id, "metadata": {}}


def snapshot(profile):
    return (
        profile.subscription_status,
        profile.subscription_id,
        profile.plan_type,
        profile.billing_customer_id,
        as_utc(profile.current_period_start),
        as_utc(profile.current_period_end),
    )


async def reload(session_factory, user_id="user-1"):
    async with session_factory() as session:
        return await reconciler.get_profile(session, user_id)


@pytest.mark.asyncio
async def test_checkout_completed_activates_profile(db, make_user, session_factory):
    await make_user()
    await reconciler.apply_checkout_completed(db, checkout())
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "active"
    assert profile.subscription_id == "sub_1"
    assert profile.plan_type == "steady"
    assert profile.billing_customer_id == "cus_1"


@pytest.mark.asyncio
async def test_checkout_completed_never_reassigns_billing_customer(db, make_user, session_factory):
    await make_user(billing_customer_id="cus_original")
    await reconciler.apply_checkout_completed(db, checkout(customer="cus_other"))
    await db.commit()

    profile = await reload(session_factory)
    assert profile.billing_customer_id == "cus_original"


@pytest.mark.asyncio
async def test_checkout_completed_creates_missing_profile_for_known_user(db, make_user, session_factory):
    await make_user(profile=False)
    await reconciler.apply_checkout_completed(db, checkout(plan_type="intensive"))
    await db.commit()

    profile = await reload(session_factory)
    assert profile is not None
    assert profile.plan_type == "intensive"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "obj",
    [
        checkout(user_id=None),
        {**checkout(), "metadata": {"user_id": "user-1"}},
        checkout(plan_type="platinum"),
        checkout(subscription=None),
        checkout(user_id="ghost"),
    ],
)
async def test_checkout_completed_without_attribution_is_noop(db, make_user, session_factory, obj):
    await make_user()
    assert await reconciler.apply_checkout_completed(db, obj) is None
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "inactive"
    assert profile.subscription_id is None


@pytest.mark.asyncio
async def test_subscription_created_sets_status_plan_and_period(db, make_user, session_factory):
    await make_user()
    obj = subscription(status="trialing", metadata={"user_id": "user-1", "plan_type": "accelerated"})
    await reconciler.apply_subscription_created(db, obj)
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "trialing"
    assert profile.subscription_id == "sub_1"
    assert profile.plan_type == "accelerated"
    assert as_utc(profile.current_period_start) == datetime(2026, 10, 1, tzinfo=timezone.utc)
    assert as_utc(profile.current_period_end) == datetime(2026, 11, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_subscription_created_reads_period_from_items(db, make_user, session_factory):
    await make_user()
    obj = subscription(metadata={"user_id": "user-1"}, start=None, end=None)
    del obj["current_period_start"], obj["current_period_end"]
    obj["items"] = {"data": [{"current_period_start": START, "current_period_end": END}]}
    await reconciler.apply_subscription_created(db, obj)
    await db.commit()

    profile = await reload(session_factory)
    assert as_utc(profile.current_period_end) == datetime(2026, 11, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_subscription_created_without_user_metadata_is_noop(db, make_user, session_factory):
    await make_user()
    assert await reconciler.apply_subscription_created(db, subscription()) is None


@pytest.mark.asyncio
async def test_subscription_created_without_id_leaves_profile_untouched(db, make_user, session_factory):
    await make_user()
    obj = {"object": "subscription", "status": "active", "metadata": {"user_id": "user-1"}}
    assert await reconciler.apply_subscription_created(db, obj) is None
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "inactive"
    assert profile.subscription_id is None


@pytest.mark.asyncio
@pytest.mark.parametrize("apply", [reconciler.apply_subscription_updated, reconciler.apply_subscription_deleted])
async def test_subscription_events_without_id_are_noops(db, make_user, session_factory, apply):
    await make_user()
    obj = {"object": "subscription", "status": "active", "metadata": {"user_id": "user-1"}}
    assert await apply(db, obj) is None
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "inactive"
    assert profile.subscription_id is None


@pytest.mark.asyncio
async def test_subscription_updated_resolves_by_subscription_id(db, make_user, session_factory):
    await make_user(subscription_id="sub_1", subscription_status="active", plan_type="steady")
    await reconciler.apply_subscription_updated(db, subscription(status="past_due"))
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "past_due"
    assert profile.plan_type == "steady"
    assert as_utc(profile.current_period_start) == datetime(2026, 10, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_subscription_updated_does_not_touch_plan_type(db, make_user, session_factory):
    await make_user(subscription_id="sub_1", plan_type="steady")
    obj = subscription(metadata={"user_id": "user-1", "plan_type": "accelerated"})
    await reconciler.apply_subscription_updated(db, obj)
    await db.commit()

    profile = await reload(session_factory)
    assert profile.plan_type == "steady"


@pytest.mark.asyncio
async def test_subscription_updated_for_unknown_subscription_is_silent(db, make_user, session_factory):
    await make_user(subscription_id="sub_1", subscription_status="active")
    assert await reconciler.apply_subscription_updated(db, subscription(sub_id="sub_foreign", status="canceled")) is None
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "active"


@pytest.mark.asyncio
async def test_subscription_updated_for_superseded_subscription_is_skipped(db, make_user, session_factory):
    await make_user(subscription_id="sub_new", subscription_status="active")
    obj = subscription(sub_id="sub_old", status="canceled", metadata={"user_id": "user-1"})
    assert await reconciler.apply_subscription_updated(db, obj) is None


@pytest.mark.asyncio
async def test_unknown_provider_status_is_stored_as_inactive(db, make_user, session_factory):
    await make_user(subscription_id="sub_1", subscription_status="active")
    await reconciler.apply_subscription_updated(db, subscription(status="paused"))
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "inactive"


@pytest.mark.asyncio
async def test_subscription_deleted_marks_canceled_and_keeps_id(db, make_user, session_factory):
    await make_user(subscription_id="sub_1", subscription_status="active", plan_type="steady")
    await reconciler.apply_subscription_deleted(db, subscription(status="canceled"))
    await db.commit()

    profile = await reload(session_factory)
    assert profile.subscription_status == "canceled"
    assert profile.subscription_id == "sub_1"
    assert profile.plan_type == "steady"


@pytest.mark.asyncio
async def test_invoice_events_flip_status_by_subscription_id(db, make_user, session_factory):
    await make_user(subscription_id="sub_1", subscription_status="active")

    await reconciler.apply_invoice_payment_failed(db, invoice())
    await db.commit()
    assert (await reload(session_factory)).subscription_status == "past_due"

    await reconciler.apply_invoice_payment_succeeded(db, invoice())
    await db.commit()
    assert (await reload(session_factory)).subscription_status == "active"


@pytest.mark.asyncio
async def test_invoice_subscription_id_from_parent_details(db, make_user, session_factory):
    await make_user(subscription_id="sub_1", subscription_status="active")
    obj = {
        "id": "in_2",
        "object": "invoice",
        "parent": {"type": "subscription_details", "subscription_details": {"subscription": "sub_1"}},
    }
    await reconciler.apply_invoice_payment_failed(db, obj)
    await db.commit()
    assert (await reload(session_factory)).subscription_status == "past_due"


@pytest.mark.asyncio
@pytest.mark.parametrize("obj", [invoice(sub_id="sub_missing"), {"id": "in_3", "object": "invoice"}])
async def test_invoice_failed_for_unmatched_subscription_is_noop(db, obj):
    assert await reconciler.apply_invoice_payment_failed(db, obj) is None
    assert await reconciler.apply_invoice_payment_succeeded(db, obj) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("first_updated", [False, True])
async def test_checkout_and_update_are_idempotent_in_either_order(make_user, session_factory, first_updated):
    await make_user()
    completed = checkout()
    updated = subscription(status="active", metadata={"user_id": "user-1"})

    async def apply_all():
        async with session_factory() as session:
            if first_updated:
                await reconciler.apply_subscription_updated(session, updated)
                await reconciler.apply_checkout_completed(session, completed)
            else:
                await reconciler.apply_checkout_completed(session, completed)
                await reconciler.apply_subscription_updated(session, updated)
            await session.commit()

    await apply_all()
    once = snapshot(await reload(session_factory))
    await apply_all()
    twice = snapshot(await reload(session_factory))

    assert once == twice
    assert once == (
        "active",
        "sub_1",
        "steady",
        "cus_1",
        datetime(2026, 10, 1, tzinfo=timezone.utc),
        datetime(2026, 11, 1, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_resolve_user_id_prefers_metadata_then_subscription(db, make_user):
    await make_user(subscription_id="sub_1")
    assert await reconciler.resolve_user_id(db, {"metadata": {"user_id": "someone"}}) == "someone"
    assert await reconciler.resolve_user_id(db, invoice()) == "user-1"
    assert await reconciler.resolve_user_id(db, subscription()) == "user-1"
    assert await reconciler.resolve_user_id(db, invoice(sub_id="sub_x")) is None


def test_active_status_check():
    assert reconciler.is_subscription_active(None) is False
    assert reconciler.is_subscription_active(models.UserProfile(subscription_status="trialing")) is True
    assert reconciler.is_subscription_active(models.UserProfile(subscription_status="past_due")) is False
