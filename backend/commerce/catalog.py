"""
Catalog read model.

Descriptive product data lives at `product:{id}`; the quantity a caller sees
is always taken from the inventory ledger, which is the only writer of stock.
"""

from typing import Optional

import structlog

from kv_store import KeyValueStore
from schemas.commerce import Product, SessionFilters

from commerce.inventory import InventoryLedger


PRODUCT_PREFIX = "product:"

# Chat budgets arrive in major units ("2500" rupees); prices are stored in minor units
MINOR_UNITS_PER_MAJOR = 100


def product_key(product_id: str) -> str:
    return f"{PRODUCT_PREFIX}{product_id}"


class Catalog:
    def __init__(self, store: KeyValueStore, ledger: InventoryLedger):
        self.store = store
        self.ledger = ledger
        self._logger = structlog.get_logger().bind(component="catalog")

    async def _with_stock(self, product: Product) -> Product:
        record = await self.ledger.get_record(product.id)
        product.quantity = record.quantity if record else 0
        return product

    async def get(self, product_id: str) -> Optional[Product]:
        raw = await self.store.get(product_key(product_id))
        if raw is None:
            return None
        return await self._with_stock(Product.model_validate_json(raw))

    async def list_products(self) -> list[Product]:
        products = []
        for key in sorted(await self.store.scan(PRODUCT_PREFIX)):
            product = await self.get(key[len(PRODUCT_PREFIX):])
            if product is not None:
                products.append(product)
        return products

    async def upsert(self, product: Product) -> Product:
        """Write the product and set its on-hand quantity."""
        await self.store.set(product_key(product.id), product.model_dump_json(exclude={"quantity"}))
        await self.ledger.set_quantity(product.id, product.quantity)
        self._logger.info("product_upserted", product_id=product.id, quantity=product.quantity)
        return product

    async def search(self, filters: SessionFilters) -> list[Product]:
        """Linear filter over the catalog; hides anything with nothing available."""
        intent = filters.intent.lower() if filters.intent else None
        matches = []
        for product in await self.list_products():
            if intent and intent not in product.category.lower():
                continue
            if filters.color and product.color != filters.color:
                continue
            if filters.size and filters.size not in product.sizes:
                continue
            if filters.budget is not None and product.price > filters.budget * MINOR_UNITS_PER_MAJOR:
                continue
            if await self.ledger.available(product.id) <= 0:
                continue
            matches.append(product)

        self._logger.debug("catalog_search",
                           filters=filters.model_dump(exclude_none=True),
                           count=len(matches))
        return matches
