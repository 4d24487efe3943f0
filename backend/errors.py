"""
Checkout error kinds.

Every failure the core reports to a caller is a CommerceError carrying a
stable machine code, a human message, the HTTP status the route layer
should use, and optional structured details.
"""

from typing import Any, Optional


class CommerceError(Exception):
    code = "commerce_error"
    status_code = 400

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


# --- Validation ------------------------------------------------------------

class InvalidQuantity(CommerceError):
    code = "invalid_quantity"


class InvalidHandoff(CommerceError):
    """Chat handoff with a wrong source or no intent."""

    code = "invalid_handoff"


class CartEmpty(CommerceError):
    code = "cart_empty"


class SessionNotFound(CommerceError):
    code = "session_not_found"
    status_code = 404


class ProductNotFound(CommerceError):
    code = "product_not_found"
    status_code = 404


class UnknownGateway(CommerceError):
    code = "unknown_gateway"


# --- Stock -----------------------------------------------------------------

class OutOfStock(CommerceError):
    code = "out_of_stock"
    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int):
        super().__init__(
            f"Only {available} unit(s) of {product_id} available, {requested} requested",
            product_id=product_id,
            requested=requested,
            available=available,
        )


class StockUnavailable(CommerceError):
    """Checkout-time stock failure; all reservations of the attempt are released."""

    code = "stock_unavailable"
    status_code = 409

    def __init__(self, product_id: str, reason: str):
        super().__init__(
            f"Stock unavailable for {product_id}: {reason}",
            product_id=product_id,
            reason=reason,
        )


# --- Payments --------------------------------------------------------------

class GatewayError(CommerceError):
    code = "gateway_error"
    status_code = 502

    def __init__(self, gateway: str, message: str):
        super().__init__(message, gateway=gateway)


class InvalidSignature(CommerceError):
    code = "invalid_signature"

    def __init__(self, gateway: str, message: str = "Invalid webhook signature"):
        super().__init__(message, gateway=gateway)


# --- Orders ----------------------------------------------------------------

class UnknownOrder(CommerceError):
    code = "order_not_found"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(f"Order not found: {order_id}", order_id=order_id)


class InvalidTransition(CommerceError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, order_id: str, current: str, requested: str):
        super().__init__(
            f"Cannot move order {order_id} from {current} to {requested}",
            order_id=order_id,
            current=current,
            requested=requested,
        )


class AlreadyFinalized(CommerceError):
    """Raised internally when a late or duplicate event hits a settled order.

    Webhook handling absorbs it as a no-op.
    """

    code = "already_finalized"
    status_code = 409

    def __init__(self, order_id: str, status: str):
        super().__init__(
            f"Order {order_id} already {status}", order_id=order_id, status=status
        )


# --- Store -----------------------------------------------------------------

class StoreUnavailable(CommerceError):
    code = "store_unavailable"
    status_code = 503

    def __init__(self, message: str = "Key-value store unavailable", key: Optional[str] = None):
        if key is None:
            super().__init__(message)
        else:
            super().__init__(message, key=key)


class StoreContention(StoreUnavailable):
    code = "store_contention"
