from __future__ import annotations

import logging

import stripe
from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.core.errors import BillingError, Unauthorized
from app.core.security import bearer_token
from app.core.settings import settings
from app.db import models
from app.db.session import get_db
from app.services.accounts.deletion import delete_account
from app.services.identity.service import get_identity_for_token
from app.services.payments.gateway import StripeGateway, gateway_from_settings
from app.services.payments.service import create_checkout_session, manage_subscription
from app.services.subscriptions.service import get_profile, is_subscription_active
from app.services.webhooks.dispatcher import WebhookProcessor, processor_from_settings


logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

if settings.allowed_hosts and settings.allowed_hosts.strip() != "*":
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=[h.strip() for h in settings.allowed_hosts.split(",") if h.strip()])


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


@app.exception_handler(stripe.StripeError)
async def stripe_error_handler(request: Request, exc: stripe.StripeError) -> JSONResponse:
    logger.exception("Stripe request failed on %s", request.url.path)
    return JSONResponse({"error": exc.user_message or "Billing provider error"}, status_code=502)


def get_gateway() -> StripeGateway:
    return gateway_from_settings()


def get_optional_gateway() -> StripeGateway | None:
    if not settings.stripe_secret_key:
        return None
    return gateway_from_settings()


def get_webhook_processor() -> WebhookProcessor:
    return processor_from_settings()


async def get_current_user(
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> models.AuthIdentity:
    identity = await get_identity_for_token(db, bearer_token(authorization))
    if not identity:
        raise Unauthorized("Unauthorized")
    return identity


class CheckoutSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str = Field(alias="planType")
    success_url: str = Field(alias="successUrl")
    cancel_url: str = Field(alias="cancelUrl")


class ManageSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: str
    return_url: str | None = Field(default=None, alias="returnUrl")


def _iso(value) -> str | None:
    return value.isoformat() if value else None


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.post("/payments/stripe/webhook")
async def stripe_webhook(
    request: Request,
    processor: WebhookProcessor = Depends(get_webhook_processor),
    db: AsyncSession = Depends(get_db),
):
    payload = await request.body()
    sig = request.headers.get("Stripe-Signature")
    try:
        await processor.process(db, payload, sig)
    except BillingError as e:
        return PlainTextResponse(e.message, status_code=400)
    except Exception as e:
        logger.exception("Webhook error")
        return PlainTextResponse(f"Webhook error: {e}", status_code=400)
    return PlainTextResponse("Webhook handled successfully", status_code=200)


@app.post("/billing/checkout-session")
async def billing_checkout_session(
    body: CheckoutSessionRequest,
    user: models.AuthIdentity = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    result = await create_checkout_session(
        db,
        gateway,
        user_id=user.id,
        email=user.email,
        plan_type=body.plan_type,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return {"sessionId": result.session_id, "url": result.url}


@app.post("/billing/subscription")
async def billing_manage_subscription(
    body: ManageSubscriptionRequest,
    user: models.AuthIdentity = Depends(get_current_user),
    gateway: StripeGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db),
):
    return await manage_subscription(db, gateway, user_id=user.id, action=body.action, return_url=body.return_url)


@app.get("/billing/subscription")
async def billing_subscription_status(
    user: models.AuthIdentity = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    profile = await get_profile(db, user.id)
    return {
        "userId": user.id,
        "billingCustomerId": profile.billing_customer_id if profile else None,
        "subscriptionId": profile.subscription_id if profile else None,
        "planType": profile.plan_type if profile else None,
        "status": profile.subscription_status if profile else "inactive",
        "currentPeriodStart": _iso(profile.current_period_start) if profile else None,
        "currentPeriodEnd": _iso(profile.current_period_end) if profile else None,
        "updatedAt": _iso(profile.updated_at) if profile else None,
        "isActive": is_subscription_active(profile),
    }


@app.delete("/account")
async def account_delete(
    user: models.AuthIdentity = Depends(get_current_user),
    gateway: StripeGateway | None = Depends(get_optional_gateway),
    db: AsyncSession = Depends(get_db),
):
    try:
        await delete_account(db, user.id, gateway)
    except BillingError as e:
        return JSONResponse({"success": False, "error": e.message}, status_code=e.status_code)
    return {"success": True, "message": "Account deleted successfully"}
