"""
Follow live inventory from the command line.

Usage: python scripts/watch_inventory.py [ws://host:port/] [user_id]
"""
import asyncio
import logging
import sys

from warehouse_sync.services.sync_client import InventorySyncClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def print_event(event):
    logger.info(event.model_dump_json())


if __name__ == "__main__":
    url = sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:8000/"
    user_id = int(sys.argv[2]) if len(sys.argv) > 2 else 1

    client = InventorySyncClient(
        url,
        user_id,
        on_update=print_event,
        on_state_change=lambda state: logger.info(f"Sync {state}")
    )

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        pass
