"""
Pytest configuration for the billing service tests.
Points settings at a throwaway SQLite database and test Stripe secrets
before any app module is imported.
"""

import os
import tempfile

_test_data_dir = tempfile.mkdtemp(prefix="caltrack_test_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_test_data_dir}/app.db")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

import hashlib
import hmac
import json
import time
from datetime import datetime, timezone

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.security import sign_session
from app.db import models
from app.db.session import get_db
from app.main import app, get_gateway, get_optional_gateway, get_webhook_processor
from app.services.webhooks.dispatcher import WebhookProcessor
from app.services.webhooks.signature import SignatureVerifier

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway:
    """In-memory stand-in for StripeGateway that records every call."""

    def __init__(self):
        self.created_customers = []
        self.deleted_customers = []
        self.checkout_sessions = []
        self.cancel_flags = []
        self.portal_sessions = []
        self.fail_delete = False

    def create_customer(self, *, email, user_id):
        customer_id = f"cus_test_{len(self.created_customers) + 1}"
        self.created_customers.append({"id": customer_id, "email": email, "user_id": user_id})
        return customer_id

    def delete_customer(self, customer_id):
        if self.fail_delete:
            raise RuntimeError("stripe unavailable")
        self.deleted_customers.append(customer_id)

    def create_checkout_session(self, *, customer_id, line_items, success_url, cancel_url, metadata):
        session_id = f"cs_test_{len(self.checkout_sessions) + 1}"
        self.checkout_sessions.append(
            {
                "id": session_id,
                "customer": customer_id,
                "line_items": line_items,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": metadata,
            }
        )
        return session_id, f"https://checkout.stripe.test/{session_id}"

    def set_cancel_at_period_end(self, subscription_id, cancel):
        self.cancel_flags.append((subscription_id, cancel))
        return {"id": subscription_id, "status": "active", "cancel_at_period_end": cancel, "current_period_end": None}

    def create_portal_session(self, *, customer_id, return_url):
        self.portal_sessions.append({"customer": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/p/{customer_id}"


def as_utc(value):
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def epoch(year, month, day):
    return int(datetime(year, month, day, tzinfo=timezone.utc).timestamp())


def compute_signature(secret, timestamp, body):
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + body, hashlib.sha256).hexdigest()


def sign_body(body, secret=WEBHOOK_SECRET, timestamp=None):
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def event_body(event_type, obj, event_id="evt_test_1"):
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def make_user(session_factory):
    """Create an identity, user record and (optionally) a profile."""

    async def _make(user_id="user-1", email=None, profile=True, **profile_fields):
        email = email or f"{user_id}@example.com"
        async with session_factory() as session:
            session.add(models.AuthIdentity(id=user_id, email=email))
            await session.flush()
            session.add(models.User(id=user_id, email=email))
            await session.flush()
            if profile:
                session.add(models.UserProfile(user_id=user_id, **profile_fields))
            await session.commit()
        return user_id

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user_id="user-1"):
        return {"Authorization": f"Bearer {sign_session(user_id)}"}

    return _headers


@pytest_asyncio.fixture
async def client(session_factory, gateway):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_optional_gateway] = lambda: gateway
    app.dependency_overrides[get_webhook_processor] = lambda: WebhookProcessor(SignatureVerifier(WEBHOOK_SECRET))
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
