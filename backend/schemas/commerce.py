"""
Commerce Schemas
================
Pydantic models for everything the checkout core persists or exchanges:
catalog products, carts, chat sessions, inventory ledger records, orders,
and the provider-neutral payment intent / webhook event shapes.

Records are stored as JSON in the key-value store, so every model here
round-trips through model_dump_json / model_validate_json.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    computed_field,
    field_serializer,
    field_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Statuses a payment callback can no longer move
SETTLED_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.CANCELLED, OrderStatus.REFUNDED})


class DeliveryStatus(str, Enum):
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"

    @property
    def next(self) -> Optional["DeliveryStatus"]:
        return DELIVERY_FLOW.get(self)


DELIVERY_FLOW = {
    DeliveryStatus.PROCESSING: DeliveryStatus.SHIPPED,
    DeliveryStatus.SHIPPED: DeliveryStatus.DELIVERED,
}


class PaymentEventKind(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    IGNORED = "ignored"


# ============================================================================
# SECTION 2: CATALOG
# ============================================================================

class Product(BaseModel):
    """Catalog entry. `price` is in minor currency units."""
    id: str
    name: str
    category: str
    price: int = Field(ge=0)
    sizes: set[str] = Field(default_factory=set)
    color: Optional[str] = None
    floor_price: Optional[int] = Field(default=None, ge=0)
    quantity: int = Field(default=0, ge=0)

    @field_serializer("sizes")
    def _sorted_sizes(self, sizes: set[str]) -> list[str]:
        return sorted(sizes)


# ============================================================================
# SECTION 3: CHAT SESSION & CART
# ============================================================================

class SessionFilters(BaseModel):
    """Filters handed over by the conversational agent; opaque beyond coercion."""
    intent: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None
    budget: Optional[int] = None

    @field_validator("intent", "color", "size", "budget", mode="before")
    @classmethod
    def _coerce(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, str):
            value = value.strip() or None
        if info.field_name == "budget" and value is not None and not isinstance(value, int):
            return int(float(value))
        return value


class ChatSession(BaseModel):
    session_id: str
    filters: SessionFilters
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    product_ids: list[str] = Field(default_factory=list)


class CartItem(BaseModel):
    product_id: str
    qty: int = Field(gt=0)


class Cart(BaseModel):
    session_id: str
    items: list[CartItem] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @computed_field
    @property
    def is_empty(self) -> bool:
        return not self.items


# ============================================================================
# SECTION 4: INVENTORY LEDGER
# ============================================================================

class Hold(BaseModel):
    qty: int = Field(gt=0)
    owner: Optional[str] = None
    expires_at: float


class InventoryRecord(BaseModel):
    """
    Authoritative stock for one product.

    `holds` are outstanding reservations keyed by token; `committed` keeps
    token -> commit time so repeated commits are recognised as no-ops.
    Markers stay until the owning order is finished with them.
    """
    product_id: str
    quantity: int = Field(ge=0)
    holds: dict[str, Hold] = Field(default_factory=dict)
    committed: dict[str, float] = Field(default_factory=dict)
    version: int = 0

    def reserved(self, now: float) -> int:
        return sum(h.qty for h in self.holds.values() if h.expires_at > now)

    def available(self, now: float) -> int:
        return self.quantity - self.reserved(now)


class Reservation(BaseModel):
    token: str
    product_id: str
    qty: int
    owner: Optional[str] = None
    expires_at: float


# ============================================================================
# SECTION 5: ORDERS
# ============================================================================

class OrderItem(BaseModel):
    product_id: str
    qty: int = Field(gt=0)
    unit_price: int = Field(ge=0)
    name: str

    @computed_field
    @property
    def line_total(self) -> int:
        return self.unit_price * self.qty


class OrderEvent(BaseModel):
    """Append-only history entry"""
    at: datetime = Field(default_factory=utcnow)
    event: str
    status: OrderStatus
    delivery_status: DeliveryStatus
    detail: Optional[str] = None


class Order(BaseModel):
    """Core order entity"""
    order_id: str
    session_id: str
    items: list[OrderItem]
    amount: int = Field(ge=0)
    currency: str
    status: OrderStatus = OrderStatus.CREATED
    delivery_status: DeliveryStatus = DeliveryStatus.PROCESSING

    gateway: Optional[str] = None
    gateway_ref: Optional[str] = None
    payment_expires_at: Optional[float] = None

    reservations: list[str] = Field(default_factory=list)
    inventory_committed: bool = False
    stock_shortfall: list[str] = Field(default_factory=list)
    # Charged after cancellation; needs a manual refund
    payment_after_cancel: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    history: list[OrderEvent] = Field(default_factory=list)
    version: int = 1

    def record(self, event: str, detail: str = None) -> None:
        self.history.append(OrderEvent(
            event=event,
            status=self.status,
            delivery_status=self.delivery_status,
            detail=detail,
        ))


class OrderSummary(BaseModel):
    """Public view of an order (no reservation tokens, no history)"""
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    items: list[OrderItem]
    amount: int
    currency: str
    status: OrderStatus
    delivery_status: DeliveryStatus
    gateway: Optional[str] = None
    created_at: datetime
    payment_after_cancel: bool = False
    paid_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


# ============================================================================
# SECTION 6: PAYMENTS
# ============================================================================

class PaymentIntent(BaseModel):
    gateway: str
    gateway_ref: str
    client_payload: dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[float] = None  # provider-side deadline, when the provider sets one


class VerifiedEvent(BaseModel):
    """Provider callback after signature verification"""
    gateway: str
    event_id: str
    kind: PaymentEventKind
    raw_type: str
    order_id: Optional[str] = None
    gateway_ref: Optional[str] = None


class CheckoutResult(BaseModel):
    order: Order
    client_payload: dict[str, Any] = Field(default_factory=dict)
