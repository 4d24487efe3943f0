# commerce/__init__.py
from commerce.inventory import InventoryLedger, make_token, parse_token
from commerce.catalog import Catalog, MINOR_UNITS_PER_MAJOR
from commerce.cart import CartStore
from commerce.sessions import SessionStore
from commerce.gateways import (
    GatewayRegistry,
    PaymentGatewayAdapter,
    RazorpayGateway,
    StripeGateway,
    WebhookRouter,
    build_gateways,
)
from commerce.orders import OrderRepository, OrderService

__all__ = [
    "InventoryLedger",
    "make_token",
    "parse_token",
    "Catalog",
    "MINOR_UNITS_PER_MAJOR",
    "CartStore",
    "SessionStore",
    "GatewayRegistry",
    "PaymentGatewayAdapter",
    "RazorpayGateway",
    "StripeGateway",
    "WebhookRouter",
    "build_gateways",
    "OrderRepository",
    "OrderService",
]
