"""
Payment Gateway Adapters
========================
Uniform interface over the external payment providers:

- create_intent(order)       -> PaymentIntent (provider ref + client payload)
- verify_callback(raw, sig)  -> VerifiedEvent (paid | failed | ignored)

Signature verification happens before anything is parsed into an event, so
an unverifiable callback never reaches order state.

pip install stripe razorpay structlog
"""

import asyncio
import hashlib
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional

import razorpay
import stripe
import structlog
from razorpay.errors import (
    BadRequestError as RazorpayBadRequest,
    GatewayError as RazorpayGatewayError,
    ServerError as RazorpayServerError,
    SignatureVerificationError as RazorpaySignatureError,
)

from config import settings
from errors import GatewayError, InvalidSignature, UnknownGateway
from schemas.commerce import Order, PaymentEventKind, PaymentIntent, VerifiedEvent


# =============================================================================
# INTERFACE
# =============================================================================

class PaymentGatewayAdapter(ABC):
    """Provider binding used by checkout and webhook handling"""

    name: str = "abstract"

    @abstractmethod
    async def create_intent(self, order: Order) -> PaymentIntent:
        pass

    @abstractmethod
    def verify_callback(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> VerifiedEvent:
        pass


async def _call_sdk(gateway: str, timeout: float, fn: Callable, *args, **kwargs) -> Any:
    """Run a blocking SDK call off the event loop, bounded by `timeout`."""
    try:
        async with asyncio.timeout(timeout):
            return await asyncio.to_thread(fn, *args, **kwargs)
    except TimeoutError:
        raise GatewayError(gateway, f"{gateway} did not respond within {timeout}s")


# =============================================================================
# STRIPE
# =============================================================================

class StripeGateway(PaymentGatewayAdapter):
    """Stripe Checkout Sessions"""

    name = "stripe"

    PAID_EVENTS = {"checkout.session.completed", "checkout.session.async_payment_succeeded"}
    # A failed attempt (payment_intent.payment_failed) leaves the session payable
    FAILED_EVENTS = {"checkout.session.expired", "checkout.session.async_payment_failed"}

    # Stripe accepts expires_at 30 minutes to 24 hours out; stay a minute inside both
    MIN_SESSION_SECONDS = 1860
    MAX_SESSION_SECONDS = 86340

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        currency: str = None,
        success_url: str = None,
        cancel_url: str = None,
        timeout: float = None,
        payment_window: int = None,
        clock: Callable[[], float] = time.time,
    ):
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._currency = (currency or settings.CURRENCY).lower()
        self._success_url = success_url or settings.STRIPE_SUCCESS_URL
        self._cancel_url = cancel_url or settings.STRIPE_CANCEL_URL
        self._timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        window = payment_window or settings.PAYMENT_TIMEOUT_SECONDS
        self._session_seconds = min(max(window, self.MIN_SESSION_SECONDS), self.MAX_SESSION_SECONDS)
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="gateway", gateway=self.name)

    async def create_intent(self, order: Order) -> PaymentIntent:
        metadata = {"orderId": order.order_id}
        expires_at = int(self._clock()) + self._session_seconds
        try:
            session = await _call_sdk(
                self.name,
                self._timeout,
                stripe.checkout.Session.create,
                api_key=self._secret_key,
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": self._currency,
                            "product_data": {"name": item.name},
                            "unit_amount": item.unit_price,
                        },
                        "quantity": item.qty,
                    }
                    for item in order.items
                ],
                success_url=self._success_url,
                cancel_url=self._cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                expires_at=expires_at,
                idempotency_key=f"checkout_{order.order_id}",
            )
        except stripe.StripeError as e:
            self._logger.error("intent_failed",
                               order_id=order.order_id,
                               error=str(e),
                               error_type=type(e).__name__)
            raise GatewayError(self.name, f"Stripe checkout failed: {e.user_message or e}")

        self._logger.info("intent_created", order_id=order.order_id, stripe_session_id=session.id)
        return PaymentIntent(
            gateway=self.name,
            gateway_ref=session.id,
            client_payload={"checkoutUrl": session.url, "stripeSessionId": session.id},
            expires_at=expires_at,
        )

    def verify_callback(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> VerifiedEvent:
        if not signature:
            raise InvalidSignature(self.name, "Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(raw_payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignature(self.name)
        except ValueError as e:
            self._logger.warning("webhook_payload_invalid", error=str(e))
            raise InvalidSignature(self.name, "Malformed webhook payload")

        # Read the verified body as plain JSON; StripeObject is not a dict
        event = json.loads(raw_payload)
        event_type = event["type"]
        obj = event["data"]["object"]
        metadata = obj.get("metadata") or {}

        if event_type in self.PAID_EVENTS:
            kind = PaymentEventKind.PAID
        elif event_type in self.FAILED_EVENTS:
            kind = PaymentEventKind.FAILED
        else:
            kind = PaymentEventKind.IGNORED

        return VerifiedEvent(
            gateway=self.name,
            event_id=event["id"],
            kind=kind,
            raw_type=event_type,
            order_id=metadata.get("orderId"),
            gateway_ref=obj.get("id") if event_type.startswith("checkout.session.") else None,
        )


# =============================================================================
# RAZORPAY
# =============================================================================

class RazorpayGateway(PaymentGatewayAdapter):
    """Razorpay Orders API"""

    name = "razorpay"

    PAID_EVENTS = {"payment.captured", "order.paid"}
    # payment.failed is one attempt; the customer may retry on the same order.
    # Unpaid orders are cancelled by the payment timeout instead.
    FAILED_EVENTS: set[str] = set()

    SDK_ERRORS = (
        RazorpayBadRequest,
        RazorpayGatewayError,
        RazorpayServerError,
        OSError,
    )

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        currency: str = None,
        timeout: float = None,
        client: razorpay.Client = None,
        payment_window: int = None,
    ):
        self._key_id = key_id
        self._webhook_secret = webhook_secret
        self._currency = (currency or settings.CURRENCY).upper()
        self._timeout = timeout or settings.GATEWAY_TIMEOUT_SECONDS
        self._payment_window = payment_window or settings.PAYMENT_TIMEOUT_SECONDS
        self._client = client or razorpay.Client(auth=(key_id, key_secret))
        self._logger = structlog.get_logger().bind(component="gateway", gateway=self.name)

    async def create_intent(self, order: Order) -> PaymentIntent:
        try:
            rp_order = await _call_sdk(
                self.name,
                self._timeout,
                self._client.order.create,
                data={
                    "amount": order.amount,
                    "currency": self._currency,
                    "receipt": order.order_id[:40],
                    "notes": {"orderId": order.order_id},
                },
            )
        except self.SDK_ERRORS as e:
            self._logger.error("intent_failed",
                               order_id=order.order_id,
                               error=str(e),
                               error_type=type(e).__name__)
            raise GatewayError(self.name, f"Razorpay order creation failed: {e}")

        self._logger.info("intent_created", order_id=order.order_id, razorpay_order_id=rp_order["id"])
        return PaymentIntent(
            gateway=self.name,
            gateway_ref=rp_order["id"],
            client_payload={
                "razorpayOrderId": rp_order["id"],
                "keyId": self._key_id,
                "amount": order.amount,
                "currency": self._currency,
                "timeout": self._payment_window,
            },
        )

    def verify_callback(
        self,
        raw_payload: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> VerifiedEvent:
        if not signature:
            raise InvalidSignature(self.name, "Missing X-Razorpay-Signature header")
        body = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        try:
            self._client.utility.verify_webhook_signature(body, signature, self._webhook_secret)
        except RazorpaySignatureError as e:
            self._logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignature(self.name)

        try:
            event = json.loads(body)
        except ValueError:
            raise InvalidSignature(self.name, "Malformed webhook payload")

        event_type = event.get("event", "unknown")
        payload = event.get("payload", {})
        payment = (payload.get("payment") or {}).get("entity") or {}
        rp_order = (payload.get("order") or {}).get("entity") or {}
        notes = rp_order.get("notes") or payment.get("notes") or {}

        if event_type in self.PAID_EVENTS:
            kind = PaymentEventKind.PAID
        elif event_type in self.FAILED_EVENTS:
            kind = PaymentEventKind.FAILED
        else:
            kind = PaymentEventKind.IGNORED

        return VerifiedEvent(
            gateway=self.name,
            event_id=event_id or hashlib.sha256(body.encode()).hexdigest()[:32],
            kind=kind,
            raw_type=event_type,
            order_id=notes.get("orderId") if isinstance(notes, dict) else None,
            gateway_ref=rp_order.get("id") or payment.get("order_id"),
        )


# =============================================================================
# REGISTRY
# =============================================================================

class GatewayRegistry:
    def __init__(self, adapters: list[PaymentGatewayAdapter] = None):
        self._adapters: dict[str, PaymentGatewayAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: PaymentGatewayAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> PaymentGatewayAdapter:
        adapter = self._adapters.get((name or "").lower())
        if adapter is None:
            raise UnknownGateway(
                f"Payment gateway not available: {name}",
                gateway=name,
                available=self.names,
            )
        return adapter

    @property
    def names(self) -> list[str]:
        return sorted(self._adapters)


def build_gateways(config=settings) -> GatewayRegistry:
    """Register every provider whose credentials are configured."""
    logger = structlog.get_logger().bind(component="gateway")
    registry = GatewayRegistry()

    if config.STRIPE_SECRET_KEY and config.STRIPE_WEBHOOK_SECRET:
        registry.register(StripeGateway(config.STRIPE_SECRET_KEY, config.STRIPE_WEBHOOK_SECRET))
    else:
        logger.warning("gateway_not_configured", gateway=StripeGateway.name)

    if config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET and config.RAZORPAY_WEBHOOK_SECRET:
        registry.register(RazorpayGateway(
            config.RAZORPAY_KEY_ID,
            config.RAZORPAY_KEY_SECRET,
            config.RAZORPAY_WEBHOOK_SECRET,
        ))
    else:
        logger.warning("gateway_not_configured", gateway=RazorpayGateway.name)

    logger.info("gateways_ready", gateways=registry.names)
    return registry


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

EventHandler = Callable[[VerifiedEvent, str], Awaitable[dict]]


class WebhookRouter:
    """
    Routes verified provider events to handlers by event kind.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: dict[PaymentEventKind, EventHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, kind: PaymentEventKind):
        """Decorator to register handler for an event kind"""
        def decorator(handler: EventHandler):
            self._handlers[kind] = handler
            self._logger.debug("handler_registered", kind=kind.value)
            return handler
        return decorator

    async def route(self, event: VerifiedEvent, order_id: str) -> dict:
        handler = self._handlers.get(event.kind)
        if not handler:
            self._logger.info("event_ignored",
                              gateway=event.gateway,
                              event_type=event.raw_type,
                              event_id=event.event_id)
            return {"outcome": "ignored"}
        return await handler(event, order_id)

    @property
    def supported_kinds(self) -> list[str]:
        return [k.value for k in self._handlers]
