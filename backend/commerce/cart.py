"""
Cart Store - one TTL-bounded cart per chat session.

Stock is deliberately not checked here; checkout re-validates every line
against the live inventory ledger.
"""

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog

from config import settings
from errors import InvalidQuantity, ProductNotFound
from kv_store import KeyValueStore, atomic_update
from schemas.commerce import Cart, CartItem

from commerce.catalog import Catalog


def cart_key(session_id: str) -> str:
    return f"cart:session:{session_id}"


class CartStore:
    def __init__(
        self,
        store: KeyValueStore,
        catalog: Catalog,
        ttl_seconds: int = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.catalog = catalog
        self.ttl_seconds = ttl_seconds or settings.CART_TTL_SECONDS
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="cart_store")

    def _stamp(self, cart: Cart) -> str:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        cart.updated_at = now
        cart.expires_at = now + timedelta(seconds=self.ttl_seconds)
        return cart.model_dump_json()

    async def get_cart(self, session_id: str) -> Cart:
        """Missing or expired carts come back empty."""
        raw = await self.store.get(cart_key(session_id))
        if raw is None:
            return Cart(session_id=session_id)
        return Cart.model_validate_json(raw)

    async def add_item(self, session_id: str, product_id: str, qty: int) -> Cart:
        """Upsert a line, merging quantity into an existing line for the product."""
        if qty <= 0:
            raise InvalidQuantity(f"Quantity must be positive, got {qty}")
        if await self.catalog.get(product_id) is None:
            raise ProductNotFound(f"Unknown product {product_id}", product_id=product_id)

        def mutate(raw: Optional[str]) -> str:
            cart = Cart.model_validate_json(raw) if raw else Cart(session_id=session_id)
            for item in cart.items:
                if item.product_id == product_id:
                    item.qty += qty
                    break
            else:
                cart.items.append(CartItem(product_id=product_id, qty=qty))
            return self._stamp(cart)

        raw = await atomic_update(self.store, cart_key(session_id), mutate, ttl_seconds=self.ttl_seconds)
        cart = Cart.model_validate_json(raw)

        self._logger.info("cart_item_added",
                          session_id=session_id[:8],
                          product_id=product_id,
                          qty=qty,
                          lines=len(cart.items))
        return cart

    async def remove_item(self, session_id: str, product_id: str) -> Cart:
        def mutate(raw: Optional[str]) -> Optional[str]:
            if raw is None:
                return None
            cart = Cart.model_validate_json(raw)
            remaining = [i for i in cart.items if i.product_id != product_id]
            if len(remaining) == len(cart.items):
                return None
            cart.items = remaining
            return self._stamp(cart)

        raw = await atomic_update(self.store, cart_key(session_id), mutate, ttl_seconds=self.ttl_seconds)
        return Cart.model_validate_json(raw) if raw else Cart(session_id=session_id)

    async def clear(self, session_id: str) -> None:
        await self.store.delete(cart_key(session_id))
        self._logger.info("cart_cleared", session_id=session_id[:8])
