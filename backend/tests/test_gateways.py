"""
Payment gateway adapter tests.

Signatures are computed the way each provider signs real webhooks, so
verification runs through the actual SDK code paths. No network calls.
"""

import hashlib
import hmac
import json
import time
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
import razorpay
import stripe
from razorpay.errors import ServerError as RazorpayServerError

from errors import GatewayError, InvalidSignature, UnknownGateway
from schemas.commerce import Order, OrderItem, PaymentEventKind, VerifiedEvent
from commerce.gateways import (
    GatewayRegistry,
    RazorpayGateway,
    StripeGateway,
    WebhookRouter,
    build_gateways,
)

from conftest import StubGateway, stripe_signature

STRIPE_SECRET = "whsec_test_secret"
RAZORPAY_SECRET = "rzp_webhook_secret"


@pytest.fixture
def order():
    return Order(
        order_id="ORD-TEST1",
        session_id="sess-1",
        items=[OrderItem(product_id="P3001", qty=2, unit_price=129900, name="Black Oversized T-Shirt")],
        amount=259800,
        currency="inr",
    )


def stripe_payload(event_type: str, obj: dict, event_id: str = "evt_test_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode()


def razorpay_sign(body: bytes) -> str:
    return hmac.new(RAZORPAY_SECRET.encode(), body, hashlib.sha256).hexdigest()


# ============================================================================
# Stripe
# ============================================================================

class TestStripeGateway:
    @pytest.fixture
    def gateway(self):
        return StripeGateway("sk_test_dummy", STRIPE_SECRET, currency="inr", timeout=1.0)

    def test_completed_session_is_paid(self, gateway):
        payload = stripe_payload(
            "checkout.session.completed",
            {"id": "cs_test_1", "object": "checkout.session", "metadata": {"orderId": "ORD-TEST1"}},
        )

        event = gateway.verify_callback(payload, stripe_signature(payload, STRIPE_SECRET))

        assert event.kind == PaymentEventKind.PAID
        assert event.event_id == "evt_test_1"
        assert event.order_id == "ORD-TEST1"
        assert event.gateway_ref == "cs_test_1"

    def test_expired_session_is_failed(self, gateway):
        payload = stripe_payload(
            "checkout.session.expired",
            {"id": "cs_test_1", "object": "checkout.session", "metadata": {"orderId": "ORD-TEST1"}},
        )
        event = gateway.verify_callback(payload, stripe_signature(payload, STRIPE_SECRET))
        assert event.kind == PaymentEventKind.FAILED

    def test_other_events_are_ignored(self, gateway):
        payload = stripe_payload("customer.created", {"id": "cus_1", "object": "customer"})
        event = gateway.verify_callback(payload, stripe_signature(payload, STRIPE_SECRET))
        assert event.kind == PaymentEventKind.IGNORED
        assert event.gateway_ref is None

    def test_session_without_metadata(self, gateway):
        payload = stripe_payload(
            "checkout.session.async_payment_succeeded",
            {"id": "cs_test_2", "object": "checkout.session", "payment_status": "paid"},
        )

        event = gateway.verify_callback(payload, stripe_signature(payload, STRIPE_SECRET))

        assert event.kind == PaymentEventKind.PAID
        assert event.order_id is None
        assert event.gateway_ref == "cs_test_2"

    def test_failed_attempt_does_not_cancel(self, gateway):
        # The Checkout Session stays open for another card
        payload = stripe_payload(
            "payment_intent.payment_failed",
            {"id": "pi_1", "object": "payment_intent", "metadata": {"orderId": "ORD-TEST1"}},
        )
        event = gateway.verify_callback(payload, stripe_signature(payload, STRIPE_SECRET))
        assert event.kind == PaymentEventKind.IGNORED
        assert event.gateway_ref is None

    def test_wrong_secret_rejected(self, gateway):
        payload = stripe_payload("checkout.session.completed", {"id": "cs_test_1", "metadata": {}})
        with pytest.raises(InvalidSignature):
            gateway.verify_callback(payload, stripe_signature(payload, "whsec_other"))

    def test_tampered_body_rejected(self, gateway):
        payload = stripe_payload("checkout.session.completed", {"id": "cs_test_1", "metadata": {}})
        signature = stripe_signature(payload, STRIPE_SECRET)
        with pytest.raises(InvalidSignature):
            gateway.verify_callback(payload.replace(b"cs_test_1", b"cs_test_2"), signature)

    def test_stale_timestamp_rejected(self, gateway):
        payload = stripe_payload("checkout.session.completed", {"id": "cs_test_1", "metadata": {}})
        signature = stripe_signature(payload, STRIPE_SECRET, timestamp=int(time.time()) - 3600)
        with pytest.raises(InvalidSignature):
            gateway.verify_callback(payload, signature)

    def test_missing_signature_rejected(self, gateway):
        with pytest.raises(InvalidSignature):
            gateway.verify_callback(b"{}", None)

    @pytest.mark.asyncio
    async def test_create_intent(self, gateway, order, monkeypatch):
        calls = {}

        def fake_create(**kwargs):
            calls.update(kwargs)
            return SimpleNamespace(id="cs_test_9", url="https://checkout.stripe.com/c/cs_test_9")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        intent = await gateway.create_intent(order)

        assert intent.gateway_ref == "cs_test_9"
        assert intent.client_payload["checkoutUrl"].endswith("cs_test_9")
        assert calls["metadata"] == {"orderId": "ORD-TEST1"}
        assert calls["idempotency_key"] == "checkout_ORD-TEST1"
        line = calls["line_items"][0]
        assert line["quantity"] == 2
        assert line["price_data"]["unit_amount"] == 129900
        assert line["price_data"]["currency"] == "inr"

    @pytest.mark.asyncio
    async def test_session_expiry_follows_payment_window(self, order, monkeypatch):
        calls = {}

        def fake_create(**kwargs):
            calls.update(kwargs)
            return SimpleNamespace(id="cs_test_9", url="https://checkout.stripe.com/c/cs_test_9")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        now = 1_700_000_000
        gateway = StripeGateway("sk_test_dummy", STRIPE_SECRET, payment_window=3600, clock=lambda: now)
        intent = await gateway.create_intent(order)
        assert calls["expires_at"] == now + 3600
        assert intent.expires_at == now + 3600

        # Clamped into the range Stripe accepts
        short = StripeGateway("sk_test_dummy", STRIPE_SECRET, payment_window=60, clock=lambda: now)
        await short.create_intent(order)
        assert calls["expires_at"] == now + StripeGateway.MIN_SESSION_SECONDS

        long = StripeGateway("sk_test_dummy", STRIPE_SECRET, payment_window=7 * 86400, clock=lambda: now)
        await long.create_intent(order)
        assert calls["expires_at"] == now + StripeGateway.MAX_SESSION_SECONDS

    @pytest.mark.asyncio
    async def test_create_intent_maps_sdk_errors(self, gateway, order, monkeypatch):
        def fake_create(**kwargs):
            raise stripe.APIConnectionError("connection refused")

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

        with pytest.raises(GatewayError) as exc:
            await gateway.create_intent(order)
        assert exc.value.details["gateway"] == "stripe"

    @pytest.mark.asyncio
    async def test_create_intent_times_out(self, order, monkeypatch):
        gateway = StripeGateway("sk_test_dummy", STRIPE_SECRET, timeout=0.05)
        monkeypatch.setattr(stripe.checkout.Session, "create", lambda **kw: time.sleep(0.5))

        with pytest.raises(GatewayError):
            await gateway.create_intent(order)


# ============================================================================
# Razorpay
# ============================================================================

class TestRazorpayGateway:
    @pytest.fixture
    def gateway(self):
        client = razorpay.Client(auth=("rzp_test_key", "rzp_test_secret"))
        return RazorpayGateway(
            "rzp_test_key", "rzp_test_secret", RAZORPAY_SECRET,
            currency="inr", timeout=1.0, client=client,
        )

    def _payment_event(self, event_type: str) -> bytes:
        return json.dumps({
            "entity": "event",
            "event": event_type,
            "payload": {
                "payment": {
                    "entity": {
                        "id": "pay_1",
                        "order_id": "order_RP1",
                        "notes": {"orderId": "ORD-TEST1"},
                    }
                }
            },
        }).encode()

    def test_captured_payment_is_paid(self, gateway):
        body = self._payment_event("payment.captured")

        event = gateway.verify_callback(body, razorpay_sign(body), event_id="evt_rp_1")

        assert event.kind == PaymentEventKind.PAID
        assert event.event_id == "evt_rp_1"
        assert event.order_id == "ORD-TEST1"
        assert event.gateway_ref == "order_RP1"

    def test_failed_attempt_does_not_cancel(self, gateway):
        # The customer can retry on the same Razorpay order
        body = self._payment_event("payment.failed")
        event = gateway.verify_callback(body, razorpay_sign(body))
        assert event.kind == PaymentEventKind.IGNORED
        # Without an event id header the body digest identifies the delivery
        assert event.event_id == hashlib.sha256(body).hexdigest()[:32]

    def test_bad_signature_rejected(self, gateway):
        body = self._payment_event("payment.captured")
        with pytest.raises(InvalidSignature):
            gateway.verify_callback(body, "0" * 64)

    def test_missing_signature_rejected(self, gateway):
        with pytest.raises(InvalidSignature):
            gateway.verify_callback(self._payment_event("payment.captured"), "")

    @pytest.mark.asyncio
    async def test_create_intent(self, order):
        client = MagicMock()
        client.order.create.return_value = {"id": "order_RP9", "amount": 259800}
        gateway = RazorpayGateway(
            "rzp_test_key", "s", RAZORPAY_SECRET, currency="inr", client=client, payment_window=1800,
        )

        intent = await gateway.create_intent(order)

        assert intent.gateway_ref == "order_RP9"
        assert intent.client_payload == {
            "razorpayOrderId": "order_RP9",
            "keyId": "rzp_test_key",
            "amount": 259800,
            "currency": "INR",
            "timeout": 1800,
        }
        data = client.order.create.call_args.kwargs["data"]
        assert data["amount"] == 259800
        assert data["notes"] == {"orderId": "ORD-TEST1"}

    @pytest.mark.asyncio
    async def test_create_intent_maps_sdk_errors(self, order):
        client = MagicMock()
        client.order.create.side_effect = RazorpayServerError("upstream down")
        gateway = RazorpayGateway("rzp_test_key", "s", RAZORPAY_SECRET, client=client)

        with pytest.raises(GatewayError):
            await gateway.create_intent(order)


# ============================================================================
# Registry & routing
# ============================================================================

class TestRegistry:
    def test_unknown_gateway(self):
        registry = GatewayRegistry([StubGateway("stub")])
        assert registry.get("STUB").name == "stub"
        with pytest.raises(UnknownGateway) as exc:
            registry.get("paypal")
        assert exc.value.details["available"] == ["stub"]

    def test_only_configured_providers_registered(self):
        config = SimpleNamespace(
            STRIPE_SECRET_KEY="sk_test_dummy",
            STRIPE_WEBHOOK_SECRET=STRIPE_SECRET,
            RAZORPAY_KEY_ID=None,
            RAZORPAY_KEY_SECRET=None,
            RAZORPAY_WEBHOOK_SECRET=None,
        )
        assert build_gateways(config).names == ["stripe"]

    @pytest.mark.asyncio
    async def test_router_ignores_unregistered_kinds(self):
        router = WebhookRouter()
        seen = []

        @router.register(PaymentEventKind.PAID)
        async def on_paid(event, order_id):
            seen.append(order_id)
            return {"outcome": "paid"}

        event = VerifiedEvent(gateway="stub", event_id="e1", kind=PaymentEventKind.FAILED, raw_type="x")
        assert await router.route(event, "ORD-1") == {"outcome": "ignored"}

        event = VerifiedEvent(gateway="stub", event_id="e2", kind=PaymentEventKind.PAID, raw_type="x")
        assert await router.route(event, "ORD-1") == {"outcome": "paid"}
        assert seen == ["ORD-1"]
        assert router.supported_kinds == ["paid"]
