"""Shared fixtures for the payment lifecycle tests.

- All HTTP calls go through the local ASGI app (httpx ASGITransport).
- AnyIO is the async runner (@pytest.mark.anyio) on the asyncio backend.
- The database is an in-memory SQLite (aiosqlite) created per test from the models.
- The gateway is a fake PaymentGateway; webhook signatures are still checked
  by the real Stripe verifier against locally signed payloads.
- Redis is replaced by an in-memory double.
"""
import hashlib
import hmac
import json
import os
import time
from datetime import date
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, Optional

# settings are read at import time
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["NOTIFICATIONS_ASYNC"] = "false"

import httpx
import pytest
from httpx import ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from alphasup.db.base import Base
from alphasup.db.session import get_session
from alphasup.errors import GatewayError
from alphasup.main import app
from alphasup.models import Booking
from alphasup.models.enums import PaymentType
from alphasup.schemas.booking import BookingCreateRequest, CustomerInfo
from alphasup.services import bookings as booking_service
from alphasup.services import payment_gateway
from alphasup.services.auth import Principal, create_access_token
from alphasup.services.payment_gateway import (
    GatewayCharge,
    GatewayIntent,
    GatewayRefund,
    PaymentGateway,
    StripeGateway,
    get_gateway,
)

WEBHOOK_SECRET = "whsec_test"
CUSTOMER_ID = "cust_1"


class FakeRedis:
    """Just the commands the webhook ledger and the metrics endpoint use."""

    def __init__(self):
        self.store: Dict[str, Any] = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def llen(self, key):
        return len(self.store.get(key) or [])

    async def ping(self):
        return True


class FakeGateway(PaymentGateway):
    provider_name = "stripe"

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        self._verifier = StripeGateway(api_key="sk_test_fake", webhook_secret=webhook_secret)
        self.customers = []
        self.intents: Dict[str, GatewayIntent] = {}
        self.intent_keys: Dict[str, str] = {}
        self.intent_calls = []
        self.refund_calls = []
        self.charges: Dict[str, str] = {}
        self.failures: Dict[str, str] = {}

    def fail(self, operation: str, message: str) -> None:
        self.failures[operation] = message

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failures:
            raise GatewayError(self.failures[operation])

    async def create_customer(self, metadata, idempotency_key):
        self._maybe_fail("create_customer")
        self.customers.append((metadata, idempotency_key))
        return f"cus_{len(self.customers)}"

    async def create_payment_intent(self, params, idempotency_key):
        self._maybe_fail("create_payment_intent")
        self.intent_calls.append((params, idempotency_key))
        if idempotency_key in self.intent_keys:
            return self.intents[self.intent_keys[idempotency_key]]
        intent_id = f"pi_{len(self.intents) + 1}"
        intent = GatewayIntent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_test",
            amount=params["amount"],
            currency=params["currency"],
            metadata=dict(params["metadata"]),
            created=int(time.time()),
        )
        self.intents[intent_id] = intent
        self.intent_keys[idempotency_key] = intent_id
        return intent

    async def retrieve_payment_intent(self, intent_id):
        self._maybe_fail("retrieve_payment_intent")
        if intent_id not in self.intents:
            raise GatewayError(f"No such payment_intent: '{intent_id}'")
        return self.intents[intent_id]

    async def retrieve_charge(self, charge_id):
        return GatewayCharge(id=charge_id, payment_intent=self.charges.get(charge_id))

    async def create_refund(self, params, idempotency_key):
        self._maybe_fail("create_refund")
        self.refund_calls.append((params, idempotency_key))
        return GatewayRefund(id=f"re_{len(self.refund_calls)}", status="succeeded")

    async def verify_webhook_signature(self, payload, signature):
        return await self._verifier.verify_webhook_signature(payload, signature)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhook deliveries."""
    ts = timestamp or int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def intent_event(
    event_type: str,
    intent_id: str,
    amount: int,
    booking_id: str,
    customer_id: str = CUSTOMER_ID,
    event_id: Optional[str] = None,
    fees: str = "0",
    **extra,
) -> Dict[str, Any]:
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "status": "succeeded" if event_type == "payment_intent.succeeded" else "requires_payment_method",
        "amount": amount,
        "currency": "try",
        "created": int(time.time()),
        "metadata": {
            "bookingId": booking_id,
            "customerId": customer_id,
            "fees": fees,
            "customerName": "Ayşe Yılmaz",
            "customerPhone": "+905551112233",
        },
        "payment_method": {
            "id": "pm_1",
            "type": "card",
            "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030, "country": "TR"},
        },
    }
    obj.update(extra)
    return {
        "id": event_id or f"evt_{event_type}_{intent_id}",
        "type": event_type,
        "data": {"object": obj},
    }


async def post_event(client: httpx.AsyncClient, event: Dict[str, Any], signature: Optional[str] = None) -> httpx.Response:
    payload = json.dumps(event)
    headers = {"Stripe-Signature": signature or sign_payload(payload), "Content-Type": "application/json"}
    return await client.post("/payments/webhook", content=payload, headers=headers)


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use the asyncio event loop."""
    return "asyncio"


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(payment_gateway, "redis_client", fake)
    monkeypatch.setattr("alphasup.metrics.redis_client", fake)
    monkeypatch.setattr("alphasup.redis_client.redis_client", fake)
    return fake


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def async_client(session_factory, gateway, fake_redis) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def override_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_gateway] = lambda: gateway
    try:
        async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def customer_principal() -> Principal:
    return Principal(uid=CUSTOMER_ID)


@pytest.fixture
def admin_principal() -> Principal:
    return Principal(uid="admin_1", is_admin=True)


@pytest.fixture
def customer_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(CUSTOMER_ID, email='ayse@example.com')}"}


@pytest.fixture
def other_customer_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token('cust_2')}"}


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token('admin_1', is_admin=True)}"}


async def make_booking(
    session: AsyncSession,
    total: Decimal = Decimal("1000"),
    payment_type: PaymentType = PaymentType.DEPOSIT,
    customer_id: str = CUSTOMER_ID,
) -> Booking:
    req = BookingCreateRequest(
        service_id="svc_sunset_tour",
        customer=CustomerInfo(name="Ayşe Yılmaz", email="ayse@example.com", phone="+905551112233"),
        participants=2,
        scheduled_date=date(2026, 7, 1),
        scheduled_time="18:30",
        total_amount=total,
        payment_type=payment_type,
    )
    return await booking_service.create_booking(session, customer_id, req)


@pytest.fixture
async def booking(session_factory) -> Booking:
    async with session_factory() as session:
        return await make_booking(session)


async def reload(session_factory, model, ident):
    async with session_factory() as session:
        return await session.get(model, ident)

