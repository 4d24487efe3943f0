"""
Reservation Sweeper - The Safety Net
====================================
Background task that returns abandoned stock to the shelf and settles
orders the request path left behind.

Each cycle:
- Drops expired reservation holds from every inventory record
- Cancels orders stuck in payment_pending past the payment timeout
- Re-commits inventory for paid orders whose commit never finished

Expiry is already enforced lazily on every ledger write; the sweeper only
makes `available` exact for readers between writes.
"""

import asyncio

import structlog

from config import settings
from commerce.inventory import InventoryLedger
from commerce.orders import OrderService

logger = structlog.get_logger(component="reservation_sweeper")


# =============================================================================
# CONFIGURATION
# =============================================================================

class SweeperConfig:
    """Sweeper configuration"""

    # Seconds between cycles
    CHECK_INTERVAL = settings.SWEEP_INTERVAL_SECONDS

    # Enable/disable the loop
    ENABLED = settings.SWEEPER_ENABLED


config = SweeperConfig()


# =============================================================================
# SWEEP LOGIC
# =============================================================================

async def sweep_once(ledger: InventoryLedger, orders: OrderService) -> dict:
    """
    Run one sweep cycle.

    Returns:
        Stats dict: holds released plus the stale-order counters
    """
    released = await ledger.release_expired()
    stats = await orders.expire_stale_orders()
    return {"holds_released": released, **stats}


async def sweeper_loop(
    ledger: InventoryLedger,
    orders: OrderService,
    interval: float = None,
):
    """Run sweep_once forever. Errors are logged and the next cycle still runs."""
    interval = interval or config.CHECK_INTERVAL

    logger.info("sweeper_started", interval=interval, enabled=config.ENABLED)

    if not config.ENABLED:
        logger.info("sweeper_disabled")
        return

    while True:
        try:
            stats = await sweep_once(ledger, orders)
            if any(stats.values()):
                logger.info("sweep_cycle_complete", **stats)
            else:
                logger.debug("sweep_cycle_complete", **stats)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("sweep_cycle_failed", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(interval)
