# schemas/__init__.py
from schemas.commerce import (
    Cart,
    CartItem,
    ChatSession,
    CheckoutResult,
    DeliveryStatus,
    InventoryRecord,
    Order,
    OrderItem,
    OrderStatus,
    OrderSummary,
    PaymentEventKind,
    PaymentIntent,
    Product,
    Reservation,
    SessionFilters,
    VerifiedEvent,
)

__all__ = [
    "Cart",
    "CartItem",
    "ChatSession",
    "CheckoutResult",
    "DeliveryStatus",
    "InventoryRecord",
    "Order",
    "OrderItem",
    "OrderStatus",
    "OrderSummary",
    "PaymentEventKind",
    "PaymentIntent",
    "Product",
    "Reservation",
    "SessionFilters",
    "VerifiedEvent",
]
