"""
Inventory Ledger
================
Per-product stock with time-bounded reservations.

Each product has one `inventory:{product_id}` record holding the on-hand
quantity, the outstanding holds and the commit markers of open orders. Every mutation is
a compare-and-set on that single record, so concurrent reserve calls for the
last unit serialize at the store and at most one succeeds.

Lifecycle of a reservation token:
- reserve  -> hold counted against `available` until it expires
- commit   -> hold removed, quantity decremented, token remembered
- forget   -> marker dropped once the owning order can no longer commit
- release  -> hold removed, quantity untouched
- expiry   -> same as release, applied lazily on the next write or by the sweeper
"""

import time
import uuid
from typing import Callable, Optional

import structlog

from config import settings
from errors import InvalidQuantity, OutOfStock, ProductNotFound
from kv_store import KeyValueStore, atomic_update
from schemas.commerce import Hold, InventoryRecord, Reservation


INVENTORY_PREFIX = "inventory:"


def inventory_key(product_id: str) -> str:
    return f"{INVENTORY_PREFIX}{product_id}"


def make_token(product_id: str, qty: int) -> str:
    return f"{product_id}:{qty}:{uuid.uuid4().hex}"


def parse_token(token: str) -> tuple[str, int]:
    """Recover (product_id, qty) from a reservation token."""
    try:
        product_id, qty, _ = token.rsplit(":", 2)
        return product_id, int(qty)
    except ValueError:
        raise ValueError(f"Malformed reservation token: {token!r}")


class InventoryLedger:
    """Reserve / commit / release against per-product inventory records."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], float] = time.time,
        reservation_ttl: float = None,
    ):
        self.store = store
        self._clock = clock
        self.reservation_ttl = reservation_ttl or settings.RESERVATION_TTL_SECONDS
        self._logger = structlog.get_logger().bind(component="inventory_ledger")

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _prune(self, record: InventoryRecord, now: float) -> int:
        """Drop expired holds. Returns holds released."""
        expired = [t for t, h in record.holds.items() if h.expires_at <= now]
        for token in expired:
            del record.holds[token]
        if expired:
            self._logger.info("reservations_expired",
                              product_id=record.product_id,
                              tokens=len(expired))
        return len(expired)

    @staticmethod
    def _dump(record: InventoryRecord) -> str:
        record.version += 1
        return record.model_dump_json()

    async def get_record(self, product_id: str) -> Optional[InventoryRecord]:
        raw = await self.store.get(inventory_key(product_id))
        return InventoryRecord.model_validate_json(raw) if raw else None

    async def available(self, product_id: str) -> int:
        record = await self.get_record(product_id)
        if record is None:
            return 0
        return max(0, record.available(self._clock()))

    # =========================================================================
    # RESERVE / COMMIT / RELEASE
    # =========================================================================

    async def reserve(
        self,
        product_id: str,
        qty: int,
        owner: str = None,
        token: str = None,
    ) -> Reservation:
        """
        Hold `qty` units; fails with OutOfStock if fewer are available.

        Callers that must be able to release a hold whose write outcome is
        unknown (timeout, lost connection) mint the token up front with
        `make_token` and pass it in.
        """
        if qty <= 0:
            raise InvalidQuantity(f"Quantity must be positive, got {qty}")

        token = token or make_token(product_id, qty)
        if parse_token(token) != (product_id, qty):
            raise ValueError(f"Token {token!r} does not match {product_id} x{qty}")
        expires_at = self._clock() + self.reservation_ttl

        def mutate(raw: Optional[str]) -> Optional[str]:
            if raw is None:
                raise OutOfStock(product_id, qty, 0)
            record = InventoryRecord.model_validate_json(raw)
            now = self._clock()
            self._prune(record, now)
            if token in record.holds or token in record.committed:
                return None
            available = record.available(now)
            if available < qty:
                raise OutOfStock(product_id, qty, max(0, available))
            record.holds[token] = Hold(qty=qty, owner=owner, expires_at=expires_at)
            return self._dump(record)

        await atomic_update(self.store, inventory_key(product_id), mutate)

        self._logger.info("stock_reserved",
                          product_id=product_id,
                          qty=qty,
                          owner=owner,
                          expires_at=expires_at)
        return Reservation(
            token=token,
            product_id=product_id,
            qty=qty,
            owner=owner,
            expires_at=expires_at,
        )

    async def commit(self, token: str) -> bool:
        """
        Turn a reservation into a permanent decrement.

        Idempotent: returns False when the token was already committed.
        Markers are only dropped by `forget_commits`, so a repeat commit
        is a no-op for as long as the owning order may still issue one.
        A token whose hold already expired is committed against whatever is
        still available; if that is not enough, OutOfStock is raised and
        nothing changes.
        """
        product_id, qty = parse_token(token)
        applied = False

        def mutate(raw: Optional[str]) -> Optional[str]:
            nonlocal applied
            applied = False
            if raw is None:
                raise OutOfStock(product_id, qty, 0)
            record = InventoryRecord.model_validate_json(raw)
            if token in record.committed:
                return None

            now = self._clock()
            hold = record.holds.pop(token, None)
            self._prune(record, now)
            if hold is None:
                available = record.available(now)
                if available < qty:
                    raise OutOfStock(product_id, qty, max(0, available))
                self._logger.warning("late_commit", product_id=product_id, qty=qty)
            elif record.quantity < qty:
                raise OutOfStock(product_id, qty, record.quantity)

            record.quantity -= qty
            record.committed[token] = now
            applied = True
            return self._dump(record)

        await atomic_update(self.store, inventory_key(product_id), mutate)

        if applied:
            self._logger.info("stock_committed", product_id=product_id, qty=qty)
        else:
            self._logger.info("commit_already_applied", product_id=product_id)
        return applied

    async def release(self, token: str) -> bool:
        """Cancel a hold without touching quantity. Unknown tokens are a no-op."""
        product_id, qty = parse_token(token)
        released = False

        def mutate(raw: Optional[str]) -> Optional[str]:
            nonlocal released
            released = False
            if raw is None:
                return None
            record = InventoryRecord.model_validate_json(raw)
            if token not in record.holds:
                return None
            del record.holds[token]
            released = True
            return self._dump(record)

        await atomic_update(self.store, inventory_key(product_id), mutate)

        if released:
            self._logger.info("stock_released", product_id=product_id, qty=qty)
        return released

    async def release_all(self, tokens: list[str]) -> int:
        released = 0
        for token in tokens:
            if await self.release(token):
                released += 1
        return released

    async def forget_commits(self, tokens: list[str]) -> int:
        """Drop commit markers for tokens that will never be committed again."""
        forgotten = 0
        for token in tokens:
            product_id, _ = parse_token(token)
            dropped = False

            def mutate(raw: Optional[str]) -> Optional[str]:
                nonlocal dropped
                dropped = False
                if raw is None:
                    return None
                record = InventoryRecord.model_validate_json(raw)
                if record.committed.pop(token, None) is None:
                    return None
                dropped = True
                return self._dump(record)

            await atomic_update(self.store, inventory_key(product_id), mutate)
            forgotten += dropped
        return forgotten

    async def release_expired(self) -> int:
        """Sweep every record and drop expired holds. Returns holds released."""
        total = 0
        for key in await self.store.scan(INVENTORY_PREFIX):
            pruned = 0

            def mutate(raw: Optional[str]) -> Optional[str]:
                nonlocal pruned
                pruned = 0
                if raw is None:
                    return None
                record = InventoryRecord.model_validate_json(raw)
                pruned = self._prune(record, self._clock())
                return self._dump(record) if pruned else None

            await atomic_update(self.store, key, mutate)
            total += pruned
        return total

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def set_quantity(self, product_id: str, quantity: int) -> InventoryRecord:
        """Set on-hand quantity, keeping outstanding holds (used by seeding)."""
        if quantity < 0:
            raise InvalidQuantity(f"Quantity cannot be negative, got {quantity}")

        def mutate(raw: Optional[str]) -> str:
            if raw is None:
                record = InventoryRecord(product_id=product_id, quantity=quantity)
            else:
                record = InventoryRecord.model_validate_json(raw)
                record.quantity = quantity
            return self._dump(record)

        raw = await atomic_update(self.store, inventory_key(product_id), mutate)
        self._logger.info("stock_set", product_id=product_id, quantity=quantity)
        return InventoryRecord.model_validate_json(raw)

    async def restock(self, product_id: str, qty: int) -> InventoryRecord:
        """Manual restock, e.g. after a refunded order's goods come back."""
        if qty <= 0:
            raise InvalidQuantity(f"Restock quantity must be positive, got {qty}")

        def mutate(raw: Optional[str]) -> str:
            if raw is None:
                raise ProductNotFound(f"No inventory for {product_id}", product_id=product_id)
            record = InventoryRecord.model_validate_json(raw)
            record.quantity += qty
            return self._dump(record)

        raw = await atomic_update(self.store, inventory_key(product_id), mutate)
        record = InventoryRecord.model_validate_json(raw)
        self._logger.info("stock_restocked",
                          product_id=product_id,
                          qty=qty,
                          quantity=record.quantity)
        return record
