"""
Order State Machine
===================
Drives an order through

    created -> payment_pending -> paid -> (delivery: processing -> shipped -> delivered)
                               \\-> cancelled        paid -> refunded

Guarantees:
- Every status change is a conditional write on the order record, so two
  concurrent deliveries of the same webhook produce one `paid_at` and one
  inventory commit.
- Checkout never leaves partial reservations behind: any failure releases
  everything acquired in that attempt before the error is returned.
- Duplicate, late or unknown payment callbacks are acknowledged without
  effect; only a bad signature is rejected. A payment that lands on a
  cancelled order is flagged for refund.
"""

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

import structlog

from config import settings
from errors import (
    AlreadyFinalized,
    CartEmpty,
    CommerceError,
    InvalidTransition,
    OutOfStock,
    StockUnavailable,
    StoreUnavailable,
    UnknownOrder,
)
from kv_store import KeyValueStore, atomic_update
from schemas.commerce import (
    SETTLED_STATUSES,
    CheckoutResult,
    DeliveryStatus,
    Order,
    OrderItem,
    OrderStatus,
    PaymentEventKind,
    VerifiedEvent,
)

from commerce.cart import CartStore
from commerce.catalog import Catalog
from commerce.gateways import GatewayRegistry, WebhookRouter
from commerce.inventory import InventoryLedger, make_token


ORDER_PREFIX = "order:"
REF_PREFIX = "order:ref:"


def order_key(order_id: str) -> str:
    return f"{ORDER_PREFIX}{order_id}"


def ref_key(gateway: str, gateway_ref: str) -> str:
    return f"{REF_PREFIX}{gateway}:{gateway_ref}"


def new_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:16].upper()}"


# =============================================================================
# PERSISTENCE
# =============================================================================

class OrderRepository:
    """Orders at `order:{id}`; provider refs indexed at `order:ref:{gateway}:{ref}`."""

    def __init__(self, store: KeyValueStore, clock: Callable[[], float] = time.time):
        self.store = store
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def get(self, order_id: str) -> Optional[Order]:
        raw = await self.store.get(order_key(order_id))
        return Order.model_validate_json(raw) if raw else None

    async def create(self, order: Order) -> bool:
        return await self.store.set_if_absent(order_key(order.order_id), order.model_dump_json())

    async def delete(self, order_id: str) -> bool:
        return await self.store.delete(order_key(order_id))

    async def save_ref(self, gateway: str, gateway_ref: str, order_id: str) -> None:
        await self.store.set(ref_key(gateway, gateway_ref), order_id)

    async def resolve_ref(self, gateway: str, gateway_ref: str) -> Optional[str]:
        return await self.store.get(ref_key(gateway, gateway_ref))

    async def update(self, order_id: str, mutate: Callable[[Order], None]) -> Order:
        """Conditionally rewrite an order; `mutate` edits in place or raises."""

        def apply(raw: Optional[str]) -> str:
            if raw is None:
                raise UnknownOrder(order_id)
            order = Order.model_validate_json(raw)
            mutate(order)
            order.updated_at = self._now()
            order.version += 1
            return order.model_dump_json()

        raw = await atomic_update(self.store, order_key(order_id), apply)
        return Order.model_validate_json(raw)

    async def transition(
        self,
        order_id: str,
        allowed_from: Iterable[OrderStatus],
        to: OrderStatus,
        mutate: Callable[[Order], None] = None,
    ) -> Order:
        """Set status to `to` only if the current status is in `allowed_from`."""
        allowed = frozenset(allowed_from)

        def apply(order: Order) -> None:
            if order.status not in allowed:
                raise InvalidTransition(order_id, order.status.value, to.value)
            order.status = to
            if mutate:
                mutate(order)

        return await self.update(order_id, apply)

    async def list_all(self, status: OrderStatus = None) -> list[Order]:
        orders = []
        for key in await self.store.scan(ORDER_PREFIX):
            if key.startswith(REF_PREFIX):
                continue
            order = await self.get(key[len(ORDER_PREFIX):])
            if order and (status is None or order.status == status):
                orders.append(order)
        return sorted(orders, key=lambda o: o.created_at, reverse=True)


# =============================================================================
# ORDER SERVICE
# =============================================================================

class OrderService:
    """
    Checkout, payment callbacks, delivery and refunds.

    Example:
        service = OrderService(orders, carts, catalog, ledger, gateways)
        result = await service.checkout(session_id, "stripe")
        # customer pays at result.client_payload["checkoutUrl"]
        # webhook: await service.handle_callback("stripe", body, signature)
    """

    def __init__(
        self,
        orders: OrderRepository,
        carts: CartStore,
        catalog: Catalog,
        ledger: InventoryLedger,
        gateways: GatewayRegistry,
        clock: Callable[[], float] = time.time,
        currency: str = None,
        reserve_timeout: float = None,
        payment_timeout: float = None,
        payment_grace: float = None,
    ):
        self.orders = orders
        self.carts = carts
        self.catalog = catalog
        self.ledger = ledger
        self.gateways = gateways
        self._clock = clock
        self.currency = (currency or settings.CURRENCY).lower()
        self.reserve_timeout = reserve_timeout or settings.STORE_TIMEOUT_SECONDS
        self.payment_timeout = payment_timeout or settings.PAYMENT_TIMEOUT_SECONDS
        self.payment_grace = settings.PAYMENT_GRACE_SECONDS if payment_grace is None else payment_grace

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="order_service",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def _release_quietly(self, tokens: list[str], log) -> None:
        """Best-effort release; holds that cannot be released expire on their own."""
        for token in tokens:
            try:
                await self.ledger.release(token)
            except StoreUnavailable as e:
                log.error("reservation_release_failed", token=token, error=str(e))

    # =========================================================================
    # CHECKOUT
    # =========================================================================

    async def checkout(self, session_id: str, gateway: str) -> CheckoutResult:
        """
        Reserve every cart line, snapshot prices, and open a provider intent.

        Any failure releases the reservations made in this attempt; the
        order only survives once it is `payment_pending`.
        """
        adapter = self.gateways.get(gateway)
        cart = await self.carts.get_cart(session_id)
        if not cart.items:
            raise CartEmpty("Cart is empty", session_id=session_id)

        order_id = new_order_id()
        log = self._get_logger(order_id).bind(order_id=order_id, session_id=session_id[:8])
        log.info("checkout_initiated", gateway=adapter.name, lines=len(cart.items))

        tokens: list[str] = []
        items: list[OrderItem] = []
        try:
            for line in cart.items:
                product = await self.catalog.get(line.product_id)
                if product is None:
                    raise StockUnavailable(line.product_id, "product is no longer available")
                # Tracked before the write so a timed-out reserve is still released
                token = make_token(line.product_id, line.qty)
                tokens.append(token)
                try:
                    async with asyncio.timeout(self.reserve_timeout):
                        await self.ledger.reserve(line.product_id, line.qty, owner=order_id, token=token)
                except OutOfStock as e:
                    raise StockUnavailable(line.product_id, e.message)
                except (TimeoutError, StoreUnavailable):
                    raise StockUnavailable(line.product_id, "inventory check timed out")
                items.append(OrderItem(
                    product_id=product.id,
                    qty=line.qty,
                    unit_price=product.price,
                    name=product.name,
                ))

            order = Order(
                order_id=order_id,
                session_id=session_id,
                items=items,
                amount=sum(i.unit_price * i.qty for i in items),
                currency=self.currency,
                gateway=adapter.name,
                reservations=tokens,
                created_at=self._now(),
            )
            order.record("created")
            if not await self.orders.create(order):
                raise StoreUnavailable(f"Order id collision: {order_id}")
        except Exception as e:
            log.warning("checkout_failed",
                        stage="reserve",
                        error=getattr(e, "code", type(e).__name__),
                        released=len(tokens))
            await self._release_quietly(tokens, log)
            raise

        try:
            intent = await adapter.create_intent(order)
            await self.orders.save_ref(adapter.name, intent.gateway_ref, order_id)

            def to_pending(o: Order) -> None:
                o.gateway_ref = intent.gateway_ref
                o.payment_expires_at = intent.expires_at
                o.record("intent_created", detail=intent.gateway_ref)

            order = await self.orders.transition(
                order_id, {OrderStatus.CREATED}, OrderStatus.PAYMENT_PENDING, to_pending
            )
        except Exception as e:
            log.warning("checkout_failed",
                        stage="intent",
                        error=getattr(e, "code", type(e).__name__),
                        released=len(tokens))
            await self._release_quietly(tokens, log)
            await self.orders.delete(order_id)
            raise

        await self.carts.clear(session_id)

        log.info("checkout_created",
                 amount=order.amount,
                 currency=order.currency,
                 gateway_ref=order.gateway_ref)
        return CheckoutResult(order=order, client_payload=intent.client_payload)

    # =========================================================================
    # PAYMENT CALLBACKS
    # =========================================================================

    def _register_handlers(self):
        """Register payment event handlers"""

        @self.router.register(PaymentEventKind.PAID)
        async def handle_paid(event: VerifiedEvent, order_id: str):
            try:
                order = await self.mark_paid(order_id, correlation_id=event.event_id)
            except AlreadyFinalized as e:
                if e.details["status"] != OrderStatus.CANCELLED.value:
                    raise
                order = await self.flag_payment_after_cancel(order_id, event)
                return {"outcome": "payment_after_cancel", "status": order.status.value}
            return {"outcome": "paid", "status": order.status.value}

        @self.router.register(PaymentEventKind.FAILED)
        async def handle_failed(event: VerifiedEvent, order_id: str):
            order = await self.mark_failed(order_id, correlation_id=event.event_id)
            return {"outcome": "cancelled", "status": order.status.value}

    async def handle_callback(
        self,
        gateway: str,
        raw_payload: bytes,
        signature: Optional[str],
        event_id: str = None,
    ) -> dict:
        """
        Verify and apply a provider callback. Safe under at-least-once delivery.

        Raises InvalidSignature (before any state is touched) or
        StoreUnavailable (so the provider retries); every other outcome is an
        acknowledgement.
        """
        adapter = self.gateways.get(gateway)
        event = adapter.verify_callback(raw_payload, signature, event_id)

        log = self._get_logger(event.event_id).bind(gateway=event.gateway, event_type=event.raw_type)
        log.info("webhook_received", kind=event.kind.value, order_id=event.order_id)

        ack = {"received": True, "event_id": event.event_id}
        if event.kind == PaymentEventKind.IGNORED:
            return {**ack, "outcome": "ignored"}

        order_id = event.order_id
        if not order_id and event.gateway_ref:
            order_id = await self.orders.resolve_ref(event.gateway, event.gateway_ref)
        if not order_id or await self.orders.get(order_id) is None:
            log.warning("webhook_unknown_order", order_id=order_id, gateway_ref=event.gateway_ref)
            return {**ack, "outcome": "unknown_order"}

        try:
            result = await self.router.route(event, order_id)
        except UnknownOrder:
            # Deleted after the lookup above (e.g. a discarded stale order)
            log.warning("webhook_unknown_order", order_id=order_id, gateway_ref=event.gateway_ref)
            return {**ack, "outcome": "unknown_order"}
        except AlreadyFinalized as e:
            log.info("webhook_duplicate", order_id=order_id, status=e.details["status"])
            return {**ack, "outcome": "duplicate", "order_id": order_id, "status": e.details["status"]}
        except InvalidTransition as e:
            log.warning("webhook_out_of_order", order_id=order_id, current=e.details["current"])
            return {**ack, "outcome": "ignored", "order_id": order_id, "status": e.details["current"]}

        log.info("webhook_processed", order_id=order_id, outcome=result.get("outcome"))
        return {**ack, "order_id": order_id, **result}

    async def _settle(
        self,
        order_id: str,
        to: OrderStatus,
        mutate: Callable[[Order], None],
    ) -> Order:
        """payment_pending -> `to`; a settled order raises AlreadyFinalized."""
        try:
            return await self.orders.transition(order_id, {OrderStatus.PAYMENT_PENDING}, to, mutate)
        except InvalidTransition as e:
            current = OrderStatus(e.details["current"])
            if current in SETTLED_STATUSES:
                raise AlreadyFinalized(order_id, current.value) from e
            raise

    async def mark_paid(self, order_id: str, correlation_id: str = None) -> Order:
        """Confirm payment exactly once, then commit the order's reservations."""
        log = self._get_logger(correlation_id).bind(order_id=order_id)
        paid_at = self._now()

        def to_paid(order: Order) -> None:
            order.paid_at = paid_at
            order.record("payment_confirmed")

        order = await self._settle(order_id, OrderStatus.PAID, to_paid)
        log.info("order_transition", status=order.status.value, paid_at=paid_at.isoformat())

        return await self._commit_inventory(order, log)

    async def _commit_inventory(self, order: Order, log) -> Order:
        shortfall = []
        for token in order.reservations:
            try:
                await self.ledger.commit(token)
            except OutOfStock as e:
                shortfall.append(e.details["product_id"])
                log.error("stock_shortfall",
                          product_id=e.details["product_id"],
                          requested=e.details["requested"],
                          available=e.details["available"])

        def committed(o: Order) -> None:
            o.inventory_committed = True
            if shortfall:
                o.stock_shortfall = sorted(set(o.stock_shortfall) | set(shortfall))
                o.record("stock_shortfall", detail=",".join(shortfall))

        order = await self.orders.update(order.order_id, committed)
        log.info("inventory_committed", tokens=len(order.reservations), shortfall=shortfall)
        return order

    async def flag_payment_after_cancel(self, order_id: str, event: VerifiedEvent) -> Order:
        """
        A payment landed on an order that was already cancelled and whose
        reservations were released. The order stays cancelled; the flag marks it for a
        manual refund. Repeat deliveries record the event once.
        """
        log = self._get_logger(event.event_id).bind(order_id=order_id)

        def flag(order: Order) -> None:
            if order.status != OrderStatus.CANCELLED:
                raise InvalidTransition(order_id, order.status.value, "payment_after_cancel")
            if not order.payment_after_cancel:
                order.payment_after_cancel = True
                order.record("payment_after_cancel", detail=event.event_id)

        order = await self.orders.update(order_id, flag)
        log.error("payment_after_cancel",
                  gateway=event.gateway,
                  gateway_ref=event.gateway_ref or order.gateway_ref,
                  amount=order.amount,
                  currency=order.currency)
        return order

    async def mark_failed(
        self,
        order_id: str,
        correlation_id: str = None,
        reason: str = "payment_failed",
    ) -> Order:
        """Payment failed or timed out: cancel and release all reservations."""
        log = self._get_logger(correlation_id).bind(order_id=order_id)
        cancelled_at = self._now()

        def to_cancelled(order: Order) -> None:
            order.cancelled_at = cancelled_at
            order.record(reason)

        order = await self._settle(order_id, OrderStatus.CANCELLED, to_cancelled)
        log.info("order_transition", status=order.status.value)

        released = await self.ledger.release_all(order.reservations)
        log.info("reservations_released", released=released)
        return order

    # =========================================================================
    # ADMIN TRANSITIONS
    # =========================================================================

    async def set_delivery_status(self, order_id: str, status: DeliveryStatus) -> Order:
        """Advance delivery one step: processing -> shipped -> delivered."""

        def advance(order: Order) -> None:
            if order.status != OrderStatus.PAID:
                raise InvalidTransition(order_id, order.status.value, status.value)
            if order.delivery_status.next != status:
                raise InvalidTransition(order_id, order.delivery_status.value, status.value)
            order.delivery_status = status
            order.record("delivery_status", detail=status.value)

        order = await self.orders.update(order_id, advance)
        self._get_logger().info("delivery_status_updated",
                                order_id=order_id,
                                delivery_status=status.value)
        if status == DeliveryStatus.DELIVERED:
            await self._forget_commits(order)
        return order

    async def refund(self, order_id: str) -> Order:
        """paid -> refunded. Stock is not put back; restocking is a separate action."""
        refunded_at = self._now()

        def to_refunded(order: Order) -> None:
            order.refunded_at = refunded_at
            order.record("refunded")

        order = await self.orders.transition(
            order_id, {OrderStatus.PAID}, OrderStatus.REFUNDED, to_refunded
        )
        self._get_logger().info("order_transition", order_id=order_id, status=order.status.value)
        await self._forget_commits(order)
        return order

    async def _forget_commits(self, order: Order) -> None:
        """Delivered or refunded orders never commit again; drop their ledger markers."""
        if order.inventory_committed:
            await self.ledger.forget_commits(order.reservations)

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise UnknownOrder(order_id)
        return order

    async def list_orders(self, status: OrderStatus = None) -> list[Order]:
        return await self.orders.list_all(status)

    async def track_order_message(self, order_id: str) -> dict:
        """Conversational tracking reply; store failures propagate."""
        order = await self.orders.get(order_id) if order_id else None
        if order is None:
            return {"found": False, "orderId": order_id, "message": "I couldn’t find your order 😕"}

        if order.status == OrderStatus.PAID:
            message = f"Your order is {order.delivery_status.value}."
        else:
            message = f"Your order is {order.status.value.replace('_', ' ')}."
        return {
            "found": True,
            "orderId": order.order_id,
            "status": order.status.value,
            "deliveryStatus": order.delivery_status.value,
            "message": message,
        }

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def _payment_expired(self, order: Order, now: float) -> bool:
        deadline = max(
            order.created_at.timestamp() + self.payment_timeout,
            order.payment_expires_at or 0,
        )
        return now > deadline + self.payment_grace

    async def expire_stale_orders(self) -> dict:
        """
        Sweep orders the happy path left behind:
        - payment_pending past its payment deadline plus the grace period ->
          cancelled (reservations released). The deadline is the provider's own
          expiry when it reported one, so a session that is still payable is
          never cancelled here.
        - created past the payment timeout (intent never opened) -> discarded
        - paid but inventory not yet committed -> commit again (idempotent)
        """
        log = self._get_logger().bind(task="expire_stale_orders")
        now = self._clock()
        cutoff = now - self.payment_timeout
        stats = {"cancelled": 0, "discarded": 0, "repaired": 0}

        for order in await self.orders.list_all():
            try:
                if order.status == OrderStatus.PAYMENT_PENDING and self._payment_expired(order, now):
                    await self.mark_failed(order.order_id, reason="payment_timeout")
                    stats["cancelled"] += 1
                elif order.status == OrderStatus.CREATED and order.created_at.timestamp() < cutoff:
                    await self._release_quietly(order.reservations, log)
                    await self.orders.delete(order.order_id)
                    stats["discarded"] += 1
                elif order.status == OrderStatus.PAID and not order.inventory_committed:
                    current = await self.orders.get(order.order_id)
                    if current is None or current.inventory_committed:
                        continue
                    await self._commit_inventory(current, log.bind(order_id=order.order_id))
                    stats["repaired"] += 1
            except (AlreadyFinalized, InvalidTransition) as e:
                # Settled concurrently by a webhook
                log.info("stale_order_skipped", order_id=order.order_id, reason=e.code)
            except CommerceError as e:
                log.error("stale_order_failed", order_id=order.order_id, error=e.message)

        if any(stats.values()):
            log.info("stale_orders_swept", **stats)
        return stats
