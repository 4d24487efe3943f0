# api/server.py
# ============================================================================
# AXIONIK CHECKOUT - FASTAPI SERVER
# ============================================================================
# Thin HTTP layer over the checkout core: chat handoff, shop, cart, checkout,
# payment webhooks, order tracking and admin transitions.
# ============================================================================

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog
import uvicorn
from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from config import configure_logging, settings
from errors import CommerceError, InvalidHandoff
from kv_store import KeyValueStore, create_store
from schemas.commerce import (
    Cart,
    DeliveryStatus,
    OrderStatus,
    OrderSummary,
    Product,
    SessionFilters,
)
from commerce import (
    CartStore,
    Catalog,
    GatewayRegistry,
    InventoryLedger,
    OrderRepository,
    OrderService,
    SessionStore,
    build_gateways,
)
from tasks.reservation_sweeper import sweeper_loop

logger = structlog.get_logger(component="server")

VERSION = "1.0.0"
HANDOFF_SOURCE = "chatgpt"


# ============================================================================
# COMPONENTS
# ============================================================================

class Components:
    """Explicit handles for every core component, built once per process."""

    def __init__(
        self,
        store: KeyValueStore,
        gateways: GatewayRegistry,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.gateways = gateways
        self.ledger = InventoryLedger(store, clock=clock)
        self.catalog = Catalog(store, self.ledger)
        self.sessions = SessionStore(store, clock=clock)
        self.carts = CartStore(store, self.catalog, clock=clock)
        self.orders = OrderService(
            OrderRepository(store, clock=clock),
            self.carts,
            self.catalog,
            self.ledger,
            gateways,
            clock=clock,
        )


def get_components(request: Request) -> Components:
    return request.app.state.components


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    configure_logging()
    logger.info("server_starting", version=VERSION, env=settings.ENV)

    components = getattr(app.state, "components", None)
    owns_store = components is None
    if owns_store:
        store = await create_store()
        components = Components(store, build_gateways())
        app.state.components = components

    sweeper = None
    if app.state.run_sweeper:
        sweeper = asyncio.create_task(sweeper_loop(components.ledger, components.orders))

    yield

    logger.info("server_shutting_down")
    if sweeper:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    if owns_store:
        await components.store.close()
        del app.state.components


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class AddToCartRequest(BaseModel):
    """Add a product to the session's cart"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="session", min_length=1)
    product_id: str = Field(..., alias="productId", min_length=1)
    qty: int = 1


class CheckoutRequest(BaseModel):
    """Start checkout for the session's cart"""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="session", min_length=1)
    gateway: str = Field(..., min_length=1)


class DeliveryStatusRequest(BaseModel):
    status: DeliveryStatus


class RestockRequest(BaseModel):
    qty: int


class ShopResponse(BaseModel):
    source: str = HANDOFF_SOURCE
    session: str
    filters: SessionFilters
    count: int
    products: List[Product]


class CartResponse(BaseModel):
    success: bool = True
    cart: Cart


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    store_connected: bool
    gateways: List[str]


# ============================================================================
# STARTUP TIME
# ============================================================================

START_TIME = datetime.now(timezone.utc)


# ============================================================================
# ENDPOINTS
# ============================================================================

router = APIRouter()


@router.get("/")
async def root():
    return {"message": "Axionik backend is running 🚀"}


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint"""
    components = get_components(request)
    connected = await components.store.ping()
    return HealthResponse(
        status="healthy" if connected else "degraded",
        version=VERSION,
        uptime_seconds=(datetime.now(timezone.utc) - START_TIME).total_seconds(),
        store_connected=connected,
        gateways=components.gateways.names,
    )


# --- Chat handoff & shop -----------------------------------------------------

@router.get("/chat-checkout")
async def chat_checkout(
    request: Request,
    intent: Optional[str] = None,
    color: Optional[str] = None,
    size: Optional[str] = None,
    budget: Optional[float] = None,
    source: Optional[str] = None,
):
    """
    ChatGPT -> checkout handoff.

    Example:
        /chat-checkout?intent=tshirt&color=black&size=M&budget=2500&source=chatgpt
    """
    if source != HANDOFF_SOURCE:
        raise InvalidHandoff("Invalid source", source=source)
    if not intent or not intent.strip():
        raise InvalidHandoff("Missing intent")

    filters = SessionFilters(intent=intent, color=color, size=size, budget=budget)
    session_id = await get_components(request).sessions.put(filters)
    return RedirectResponse(url=f"/shop?session={session_id}", status_code=302)


@router.get("/shop", response_model=ShopResponse)
async def shop(request: Request, session: str = Query(..., min_length=1)):
    """Products matching the session's filters, in stock only"""
    components = get_components(request)
    chat_session = await components.sessions.require(session)
    products = await components.catalog.search(chat_session.filters)
    await components.sessions.remember_results(chat_session, [p.id for p in products])
    return ShopResponse(
        session=session,
        filters=chat_session.filters,
        count=len(products),
        products=products,
    )


# --- Cart --------------------------------------------------------------------

@router.post("/add-to-cart", response_model=CartResponse)
async def add_to_cart(body: AddToCartRequest, request: Request):
    components = get_components(request)
    await components.sessions.require(body.session_id)
    cart = await components.carts.add_item(body.session_id, body.product_id, body.qty)
    return CartResponse(cart=cart)


@router.get("/cart", response_model=CartResponse)
async def get_cart(request: Request, session: str = Query(..., min_length=1)):
    cart = await get_components(request).carts.get_cart(session)
    return CartResponse(cart=cart)


# --- Checkout & webhooks -----------------------------------------------------

@router.post("/checkout")
async def checkout(body: CheckoutRequest, request: Request):
    """
    Reserve stock for the cart and open a payment with the chosen gateway.

    Returns the order id plus whatever the client needs to pay
    (Stripe checkoutUrl, or Razorpay order id and key).
    """
    result = await get_components(request).orders.checkout(body.session_id, body.gateway)
    order = result.order
    return {
        "gateway": order.gateway,
        "orderId": order.order_id,
        "amount": order.amount,
        "currency": order.currency,
        "status": order.status.value,
        **result.client_payload,
    }


@router.post("/webhook/stripe")
async def stripe_webhook(request: Request):
    """Stripe webhook handler for payment events"""
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    return await get_components(request).orders.handle_callback("stripe", payload, signature)


@router.post("/webhook/razorpay")
async def razorpay_webhook(request: Request):
    """Razorpay webhook handler for payment events"""
    payload = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    event_id = request.headers.get("x-razorpay-event-id")
    return await get_components(request).orders.handle_callback(
        "razorpay", payload, signature, event_id=event_id
    )


# --- Order tracking ----------------------------------------------------------

@router.get("/order/{order_id}", response_model=OrderSummary)
async def get_order(order_id: str, request: Request):
    order = await get_components(request).orders.get_order(order_id)
    return OrderSummary.model_validate(order)


@router.get("/chat-track-order")
async def chat_track_order(request: Request, orderId: Optional[str] = None):
    """ChatGPT order query"""
    return await get_components(request).orders.track_order_message(orderId)


# --- Admin -------------------------------------------------------------------

@router.post("/admin/order/{order_id}/status")
async def set_delivery_status(order_id: str, body: DeliveryStatusRequest, request: Request):
    order = await get_components(request).orders.set_delivery_status(order_id, body.status)
    return {"success": True, "order": OrderSummary.model_validate(order)}


@router.post("/admin/order/{order_id}/refund")
async def refund_order(order_id: str, request: Request):
    order = await get_components(request).orders.refund(order_id)
    return {"success": True, "order": OrderSummary.model_validate(order)}


@router.post("/admin/inventory/{product_id}/restock")
async def restock(product_id: str, body: RestockRequest, request: Request):
    components = get_components(request)
    record = await components.ledger.restock(product_id, body.qty)
    return {
        "success": True,
        "productId": product_id,
        "quantity": record.quantity,
        "available": await components.ledger.available(product_id),
    }


@router.get("/admin/orders")
async def list_orders(request: Request, status: Optional[OrderStatus] = None):
    """Admin dashboard"""
    orders = await get_components(request).orders.list_orders(status)
    return {
        "count": len(orders),
        "orders": [OrderSummary.model_validate(o) for o in orders],
    }


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(components: Components = None, run_sweeper: bool = None) -> FastAPI:
    """
    Build the app. Passing `components` skips store creation in the lifespan
    (the caller owns and closes the store).
    """
    app = FastAPI(
        title="Axionik Checkout",
        description="Race-free checkout core for ChatGPT-to-shop handoff",
        version=VERSION,
        lifespan=lifespan,
    )
    if components is not None:
        app.state.components = components
    app.state.run_sweeper = settings.SWEEPER_ENABLED if run_sweeper is None else run_sweeper

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header"""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.exception_handler(CommerceError)
    async def commerce_error_handler(request: Request, exc: CommerceError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request_failed",
            path=request.url.path,
            error=exc.code,
            status_code=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    app.include_router(router)
    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info",
    )
