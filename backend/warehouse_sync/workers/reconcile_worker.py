"""
Background reconciliation of the inventory cache.

Periodically reloads the hub's cache from the authoritative warehouse totals
and pushes products whose value drifted to connected clients as a single
cycle-count batch.
"""
import asyncio
import logging

from warehouse_sync.core.websocket import InventorySyncHub
from warehouse_sync.models.schemas import InventoryAction, InventoryChange

logger = logging.getLogger(__name__)


async def reconcile_inventory(hub: InventorySyncHub, source, broadcast: bool = True) -> int:
    """
    Load the authoritative snapshot into the hub.

    This function:
    1. Fetches every product total from the source
    2. Works out which products differ from the cache
    3. Overwrites the cache with the fetched rows
    4. Optionally broadcasts the changed products as one batch

    Returns:
        Number of products whose cached quantity changed
    """
    records = source.fetch()

    changed = [
        record for record in records
        if record.product_id not in hub.inventory_cache
        or hub.inventory_cache[record.product_id] != record.total_quantity
    ]

    hub.load_cache_from_source(records)

    if broadcast and changed:
        await hub.broadcast_batch_update([
            InventoryChange(
                product_id=record.product_id,
                new_quantity=record.total_quantity,
                action=InventoryAction.CYCLE_COUNT.value,
                metadata={"source": "reconciliation"},
            )
            for record in changed
        ])

    logger.info(f"Reconciled {len(records)} products, {len(changed)} changed")
    return len(changed)


async def run_reconcile_loop(hub: InventorySyncHub, source, interval_seconds: float, broadcast: bool = True):
    """Main reconciliation loop. Runs until cancelled."""
    logger.info(f"Starting inventory reconciliation. Interval: {interval_seconds}s")

    while True:
        await asyncio.sleep(interval_seconds)

        try:
            await reconcile_inventory(hub, source, broadcast=broadcast)
        except Exception as e:
            logger.error(f"Error in reconciliation pass: {str(e)}", exc_info=True)
