#!/usr/bin/env python3
"""
Seed the demo catalog into the configured store.
Run this once after pointing REDIS_URL at a fresh instance.

Prices below are in rupees and are written in paise (minor units).
"""
import asyncio
import sys

from config import configure_logging, settings
from kv_store import KeyValueStore, create_store
from schemas.commerce import Product
from commerce import Catalog, InventoryLedger, MINOR_UNITS_PER_MAJOR


DEMO_PRODUCTS = [
    {
        "id": "P3001",
        "name": "Black Oversized T-Shirt",
        "category": "tshirts",
        "color": "black",
        "price": 1299,
        "floor_price": 899,
        "quantity": 40,
        "sizes": ["M", "L", "XL"],
    },
    {
        "id": "P3002",
        "name": "White Classic T-Shirt",
        "category": "tshirts",
        "color": "white",
        "price": 999,
        "floor_price": 699,
        "quantity": 25,
        "sizes": ["S", "M", "L"],
    },
    {
        "id": "P4001",
        "name": "Blue Denim Jeans",
        "category": "jeans",
        "color": "blue",
        "price": 2199,
        "floor_price": 1799,
        "quantity": 20,
        "sizes": ["30", "32", "34", "36"],
    },
    {
        "id": "P5001",
        "name": "Grey Hoodie",
        "category": "hoodies",
        "color": "grey",
        "price": 2499,
        "floor_price": 1999,
        "quantity": 15,
        "sizes": ["M", "L", "XL"],
    },
]


def demo_products() -> list[Product]:
    return [
        Product(
            **{
                **p,
                "price": p["price"] * MINOR_UNITS_PER_MAJOR,
                "floor_price": p["floor_price"] * MINOR_UNITS_PER_MAJOR,
            }
        )
        for p in DEMO_PRODUCTS
    ]


async def seed(store: KeyValueStore) -> list[Product]:
    catalog = Catalog(store, InventoryLedger(store))
    seeded = []
    for product in demo_products():
        seeded.append(await catalog.upsert(product))
        print(f"✅ Seeded {product.name}")
    return seeded


async def main() -> bool:
    if settings.STORE_BACKEND == "memory":
        print("❌ STORE_BACKEND=memory: the seeded catalog would vanish when this script exits.")
        print("   Set STORE_BACKEND=redis and point REDIS_URL at the server the app uses.")
        return False
    configure_logging()
    print("🌱 Seeding products...")
    store = await create_store()
    try:
        await seed(store)
    finally:
        await store.close()
    print("🎉 Product seeding completed successfully!")
    return True


def cli():
    try:
        ok = asyncio.run(main())
    except Exception as e:
        print(f"❌ Seeding failed: {e}")
        ok = False
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    cli()
