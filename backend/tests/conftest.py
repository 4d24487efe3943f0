"""Pytest configuration for checkout core tests."""

import hashlib
import hmac
import json
import time
from typing import Optional

import pytest
import pytest_asyncio

from errors import GatewayError, InvalidSignature
from kv_store import InMemoryKeyValueStore
from schemas.commerce import Order, PaymentEventKind, PaymentIntent, VerifiedEvent
from commerce import (
    CartStore,
    Catalog,
    GatewayRegistry,
    InventoryLedger,
    OrderRepository,
    OrderService,
    PaymentGatewayAdapter,
    SessionStore,
)
from seed_products import seed

RESERVATION_TTL = 300
PAYMENT_TIMEOUT = 600
PAYMENT_GRACE = 120
STUB_SECRET = "stub-webhook-secret"


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class FakeClock:
    """Manually advanced clock shared by the store and every component."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Payment gateway stub
# ---------------------------------------------------------------------------

def sign_stub(payload: bytes) -> str:
    return hmac.new(STUB_SECRET.encode(), payload, hashlib.sha256).hexdigest()


def stub_event(
    kind: str,
    order_id: Optional[str] = None,
    ref: Optional[str] = None,
    event_id: str = "evt_1",
) -> bytes:
    return json.dumps({"id": event_id, "type": kind, "orderId": order_id, "ref": ref}).encode()


class StubGateway(PaymentGatewayAdapter):
    """In-process provider: HMAC-signed JSON callbacks, no network."""

    def __init__(self, name: str = "stub"):
        self.name = name
        self.fail = False
        self.intents: list[str] = []
        self.expires_at: Optional[float] = None

    async def create_intent(self, order: Order) -> PaymentIntent:
        if self.fail:
            raise GatewayError(self.name, "stub provider is down")
        self.intents.append(order.order_id)
        ref = f"{self.name}_{order.order_id}"
        return PaymentIntent(
            gateway=self.name,
            gateway_ref=ref,
            client_payload={"checkoutUrl": f"https://pay.example/{ref}"},
            expires_at=self.expires_at,
        )

    def verify_callback(self, raw_payload, signature, event_id=None) -> VerifiedEvent:
        if not signature or not hmac.compare_digest(signature, sign_stub(raw_payload)):
            raise InvalidSignature(self.name)
        event = json.loads(raw_payload)
        kinds = {"paid": PaymentEventKind.PAID, "failed": PaymentEventKind.FAILED}
        return VerifiedEvent(
            gateway=self.name,
            event_id=event["id"],
            kind=kinds.get(event["type"], PaymentEventKind.IGNORED),
            raw_type=event["type"],
            order_id=event.get("orderId"),
            gateway_ref=event.get("ref"),
        )


def stripe_signature(payload: bytes, secret: str, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhooks."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryKeyValueStore(clock=clock)


@pytest.fixture
def ledger(store, clock):
    return InventoryLedger(store, clock=clock, reservation_ttl=RESERVATION_TTL)


@pytest_asyncio.fixture
async def catalog(store, ledger):
    """Catalog seeded with the demo products."""
    await seed(store)
    return Catalog(store, ledger)


@pytest.fixture
def sessions(store, clock):
    return SessionStore(store, ttl_seconds=1800, clock=clock)


@pytest.fixture
def carts(store, catalog, clock):
    return CartStore(store, catalog, ttl_seconds=1800, clock=clock)


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def service(store, carts, catalog, ledger, gateway, clock):
    return OrderService(
        OrderRepository(store, clock=clock),
        carts,
        catalog,
        ledger,
        GatewayRegistry([gateway]),
        clock=clock,
        currency="inr",
        payment_timeout=PAYMENT_TIMEOUT,
        payment_grace=PAYMENT_GRACE,
    )
