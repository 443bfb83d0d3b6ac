"""
Client side of the warehouse inventory sync.

Keeps one connection to the hub, resubscribes after every reconnect and keeps
a local view of available quantities up to date from the events it receives.
"""
import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import websockets
from pydantic import ValidationError

from warehouse_sync.core.config import get_settings
from warehouse_sync.models.schemas import (
    InventoryBatchUpdateEvent,
    InventorySnapshotEvent,
    InventoryUpdateEvent,
)

logger = logging.getLogger(__name__)
settings = get_settings()

EVENT_MODELS = {
    "inventory_snapshot": InventorySnapshotEvent,
    "inventory_update": InventoryUpdateEvent,
    "inventory_batch_update": InventoryBatchUpdateEvent,
}


class InventorySyncClient:
    """
    Reconnecting subscriber for inventory events.

    Args:
        url: WebSocket URL of the hub
        user_id: Identifier sent in the subscribe message
        on_update: Called with each parsed event after local state is updated
        on_state_change: Called with "connected" or "disconnected"; the latter
            is only reported once reconnect attempts are exhausted
        base_delay: First reconnect delay in seconds, doubled per attempt
        max_attempts: Consecutive reconnect attempts before giving up
        connect: Factory returning an async context manager connection
        sleep: Coroutine function used to wait between attempts
    """

    def __init__(
        self,
        url: str,
        user_id: int,
        on_update: Optional[Callable[[Any], None]] = None,
        on_state_change: Optional[Callable[[str], None]] = None,
        base_delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
        connect: Callable = websockets.connect,
        sleep: Callable = asyncio.sleep,
    ):
        self.url = url
        self.user_id = user_id
        self.on_update = on_update
        self.on_state_change = on_state_change
        self.base_delay = settings.SYNC_RECONNECT_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.max_attempts = settings.SYNC_MAX_RECONNECT_ATTEMPTS if max_attempts is None else max_attempts
        self._connect = connect
        self._sleep = sleep

        self.inventory: Dict[int, int] = {}
        self.reconnect_attempts = 0
        self.gave_up = False
        self._connection = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._connection is not None

    def next_delay(self) -> Optional[float]:
        """Delay before the next reconnect attempt, or None once the cap is reached."""
        if self.reconnect_attempts >= self.max_attempts:
            return None

        self.reconnect_attempts += 1
        return self.base_delay * 2 ** (self.reconnect_attempts - 1)

    async def run(self):
        """Connect and consume events until disconnect() or retries run out."""
        while not self._closing:
            try:
                async with self._connect(self.url) as connection:
                    await self._on_open(connection)
                    async for raw in connection:
                        self.handle_message(raw)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                logger.error(f"Inventory sync connection error: {e}")

            finally:
                self._connection = None

            if self._closing:
                break

            delay = self.next_delay()
            if delay is None:
                self.gave_up = True
                logger.error("Max reconnection attempts reached, inventory sync disconnected")
                self._notify_state("disconnected")
                break

            logger.info(f"Reconnecting in {delay}s (attempt {self.reconnect_attempts})")
            await self._sleep(delay)

    async def _on_open(self, connection):
        self._connection = connection
        self.reconnect_attempts = 0
        logger.info(f"Connected to inventory sync at {self.url}")

        # The hub forgets connections on close, so every connect resubscribes
        await connection.send(json.dumps({"type": "subscribe", "userId": self.user_id}))
        self._notify_state("connected")

    def handle_message(self, raw):
        """Apply one event to the local view and hand it to on_update."""
        try:
            data = json.loads(raw)
            event_type = data.get("type") if isinstance(data, dict) else None
            model = EVENT_MODELS.get(event_type) if isinstance(event_type, str) else None
            if model is None:
                logger.debug("Ignoring unknown inventory sync message")
                return
            event = model(**data)
        except (ValueError, ValidationError) as e:
            logger.error(f"Inventory sync message parsing error: {e}")
            return

        if isinstance(event, InventorySnapshotEvent):
            logger.info(f"Received inventory snapshot of {len(event.data)} products")
            self.inventory = {level.product_id: level.available_quantity for level in event.data}
        elif isinstance(event, InventoryUpdateEvent):
            logger.info(f"Product {event.product_id} updated to {event.available_quantity}")
            self.inventory[event.product_id] = event.available_quantity
        else:
            logger.info(f"Batch update: {len(event.updates)} products")
            for update in event.updates:
                self.inventory[update.product_id] = update.available_quantity

        if self.on_update:
            self.on_update(event)

    def _notify_state(self, state: str):
        if self.on_state_change:
            self.on_state_change(state)

    async def disconnect(self):
        """Stop reconnecting and close the live connection."""
        self._closing = True
        if self._connection is not None:
            await self._connection.close()
