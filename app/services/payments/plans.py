from __future__ import annotations

from dataclasses import dataclass

from app.core.errors import InvalidPlan
from app.core.settings import settings


@dataclass(frozen=True)
class PlanPricing:
    plan_type: str
    price_reference: str
    amount_minor_units: int
    display_name: str
    description: str


PLAN_PRICING: dict[str, PlanPricing] = {
    "steady": PlanPricing(
        plan_type="steady",
        price_reference="price_steady_monthly",
        amount_minor_units=999,
        display_name="Steady Plan",
        description="Best combination of visible results and sustainable progress",
    ),
    "intensive": PlanPricing(
        plan_type="intensive",
        price_reference="price_intensive_monthly",
        amount_minor_units=1499,
        display_name="Intensive Plan",
        description="Challenge mode. Maximum results for those ready to commit",
    ),
    "accelerated": PlanPricing(
        plan_type="accelerated",
        price_reference="price_accelerated_monthly",
        amount_minor_units=1999,
        display_name="Accelerated Plan",
        description="For the ambitious. Faster results and greater momentum",
    ),
}
PLAN_TYPES: frozenset[str] = frozenset(PLAN_PRICING)


def get_plan(plan_type: str | None) -> PlanPricing:
    plan = PLAN_PRICING.get(plan_type or "")
    if plan is None:
        raise InvalidPlan("Invalid plan type")
    return plan


def _configured_price_id(plan_type: str) -> str | None:
    if plan_type == "steady":
        return settings.stripe_price_id_steady
    if plan_type == "intensive":
        return settings.stripe_price_id_intensive
    if plan_type == "accelerated":
        return settings.stripe_price_id_accelerated
    return None


def line_items_for_plan(plan: PlanPricing, currency: str | None = None) -> list[dict]:
    """Checkout line items for one monthly seat of `plan`.

    A Stripe price id configured for the plan wins; otherwise the price is
    sent inline from the table.
    """
    price_id = _configured_price_id(plan.plan_type)
    if price_id:
        return [{"price": price_id, "quantity": 1}]
    return [
        {
            "price_data": {
                "currency": currency or settings.billing_currency,
                "product_data": {
                    "name": plan.display_name,
                    "description": plan.description,
                    "metadata": {"price_reference": plan.price_reference},
                },
                "unit_amount": plan.amount_minor_units,
                "recurring": {"interval": "month"},
            },
            "quantity": 1,
        }
    ]
