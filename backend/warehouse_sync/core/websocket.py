"""
Real-time warehouse inventory sync over WebSocket.

The hub keeps a registry of subscribed connections and a cache of the last
known available quantity per product. New subscribers get a snapshot of the
cache; every later change is pushed to all open connections. Clients that miss
updates while disconnected catch up from the snapshot sent on resubscribe.
"""
import asyncio
import json
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from fastapi import FastAPI, WebSocket
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from warehouse_sync.models.schemas import (
    InventoryBatchUpdateEvent,
    InventoryChange,
    InventoryLevel,
    InventorySnapshotEvent,
    InventoryUpdateEvent,
    InventoryUpdatePayload,
    SubscribeMessage,
    WarehouseRecord,
)

logger = logging.getLogger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_open(websocket: WebSocket) -> bool:
    """True if both ends of the socket are still connected."""
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


class _Outbox:
    """Events waiting to be written to one connection, in call order."""

    def __init__(self):
        self.pending = deque()
        self.task: Optional[asyncio.Task] = None


class InventorySyncHub:
    """
    Fans warehouse inventory changes out to connected clients.

    One instance per application. All state lives on the event loop, so the
    registry and cache need no locking. Broadcasts and snapshots only queue
    the serialized event on each connection's outbox and return; a writer
    task per connection drains it, so a stalled client delays nobody else.
    """

    def __init__(self):
        # Map user id to the set of live connections subscribed under it
        self.clients: Dict[int, Set[WebSocket]] = {}
        # Map product id to last known available quantity
        self.inventory_cache: Dict[int, int] = {}
        self._outboxes: Dict[WebSocket, _Outbox] = {}
        self._initialized = False

    def initialize(self, app: FastAPI, path: str = "/{path:path}"):
        """Attach the WebSocket acceptor to the application."""
        if self._initialized:
            logger.warning("Inventory sync hub already initialized, ignoring second call")
            return

        app.add_api_websocket_route(path, self.websocket_endpoint)
        self._initialized = True
        logger.info(f"Inventory sync WebSocket listening on {path}")

    async def websocket_endpoint(self, websocket: WebSocket):
        await websocket.accept()
        logger.info("Inventory sync client connected")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is not None:
                    await self.on_message(websocket, raw)

        except Exception as e:
            logger.error(f"WebSocket error: {e}")

        finally:
            self.on_close(websocket)
            logger.info("Inventory sync client disconnected")

    async def on_message(self, websocket: WebSocket, raw: Union[str, bytes]):
        """Handle one inbound frame. Malformed messages are logged, never fatal."""
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.error(f"Invalid sync message: {e}")
            return

        if not isinstance(data, dict):
            logger.error(f"Invalid sync message: expected object, got {type(data).__name__}")
            return

        if data.get("type") != "subscribe":
            logger.debug(f"Ignoring sync message of type {data.get('type')!r}")
            return

        try:
            subscribe = SubscribeMessage(**data)
        except ValidationError as e:
            logger.error(f"Invalid subscribe message: {e.errors()}")
            return

        self._register(websocket, subscribe.userId)
        logger.info(f"User {subscribe.userId} subscribed to inventory updates")

        await self.send_snapshot(websocket)

    def _register(self, websocket: WebSocket, user_id: int):
        # A connection belongs to at most one identity
        for existing_id, connections in list(self.clients.items()):
            if existing_id != user_id and websocket in connections:
                connections.discard(websocket)
                if not connections:
                    del self.clients[existing_id]

        if user_id not in self.clients:
            self.clients[user_id] = set()
        self.clients[user_id].add(websocket)

    def on_close(self, websocket: WebSocket):
        """Remove a connection from every identity. Safe to call twice."""
        for user_id, connections in list(self.clients.items()):
            connections.discard(websocket)
            if not connections:
                del self.clients[user_id]

        outbox = self._outboxes.pop(websocket, None)
        if outbox is not None:
            outbox.pending.clear()
            if outbox.task is not None:
                outbox.task.cancel()

    def get_snapshot(self) -> List[InventoryLevel]:
        return [
            InventoryLevel(product_id=product_id, available_quantity=quantity)
            for product_id, quantity in self.inventory_cache.items()
        ]

    async def send_snapshot(self, websocket: WebSocket):
        """Queue the full cache for one connection if it is still open."""
        snapshot = InventorySnapshotEvent(timestamp=_utc_timestamp(), data=self.get_snapshot())

        if is_open(websocket):
            self._enqueue(websocket, snapshot.model_dump_json())

    async def broadcast_update(
        self,
        product_id: int,
        new_quantity: int,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Overwrite the cached quantity for a product and push the change to
        every open connection.

        Returns:
            Number of open connections the event was queued for
        """
        self.inventory_cache[product_id] = new_quantity

        try:
            message = InventoryUpdateEvent(
                timestamp=_utc_timestamp(),
                product_id=product_id,
                available_quantity=new_quantity,
                action=action,
                metadata=metadata or {},
            ).model_dump_json()
        except Exception as e:
            logger.error(f"Failed to build inventory update for product {product_id}: {e}")
            return 0

        sent = await self._broadcast(message)

        logger.info(f"Broadcast: product {product_id} = {new_quantity} units ({action}) to {sent} clients")
        return sent

    async def broadcast_batch_update(self, updates: Iterable[InventoryChange]) -> int:
        """
        Apply many changes to the cache in order and push them as one
        `inventory_batch_update` event.

        An empty list still sends an event with no updates.

        Returns:
            Number of open connections the event was queued for
        """
        updates = list(updates)

        for update in updates:
            self.inventory_cache[update.product_id] = update.new_quantity

        try:
            message = InventoryBatchUpdateEvent(
                timestamp=_utc_timestamp(),
                updates=[
                    InventoryUpdatePayload(
                        product_id=update.product_id,
                        available_quantity=update.new_quantity,
                        action=update.action,
                        metadata=update.metadata,
                    )
                    for update in updates
                ],
            ).model_dump_json()
        except Exception as e:
            logger.error(f"Failed to build batch inventory update: {e}")
            return 0

        sent = await self._broadcast(message)

        logger.info(f"Broadcast batch: {len(updates)} inventory updates to {sent} clients")
        return sent

    async def _broadcast(self, message: str) -> int:
        queued = 0
        for connections in list(self.clients.values()):
            for websocket in list(connections):
                # Closed connections are skipped, on_close removes them
                if is_open(websocket):
                    self._enqueue(websocket, message)
                    queued += 1
        return queued

    def _enqueue(self, websocket: WebSocket, message: str):
        outbox = self._outboxes.setdefault(websocket, _Outbox())
        outbox.pending.append(message)

        # One writer per connection at a time keeps its events in order
        if outbox.task is None or outbox.task.done():
            outbox.task = asyncio.get_running_loop().create_task(self._drain(websocket, outbox))

    async def _drain(self, websocket: WebSocket, outbox: _Outbox):
        while outbox.pending:
            message = outbox.pending.popleft()
            if is_open(websocket):
                await self._send(websocket, message)

    async def _send(self, websocket: WebSocket, message: str) -> bool:
        try:
            await websocket.send_text(message)
            return True
        except Exception as e:
            logger.error(f"Failed to send inventory event: {e}")
            return False

    async def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued event has been written.

        Returns:
            False if writers were still busy when the timeout expired
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        while True:
            writers = [
                outbox.task for outbox in list(self._outboxes.values())
                if outbox.task is not None and not outbox.task.done()
            ]
            if not writers:
                return True

            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                return False

            await asyncio.wait(writers, timeout=remaining)

    def shutdown(self):
        """Stop every writer and drop queued events."""
        for websocket in list(self._outboxes):
            outbox = self._outboxes.pop(websocket)
            outbox.pending.clear()
            if outbox.task is not None:
                outbox.task.cancel()

    def load_cache_from_source(self, warehouse_data: Iterable[Union[WarehouseRecord, Dict[str, Any]]]) -> int:
        """
        Overwrite cache entries from an authoritative warehouse snapshot.

        Every row is validated before any is applied, so a bad row leaves the
        cache untouched. Does not broadcast; callers that want clients to see
        the values call `broadcast_batch_update` as well.
        """
        records = [
            item if isinstance(item, WarehouseRecord) else WarehouseRecord(**item)
            for item in warehouse_data
        ]

        for record in records:
            self.inventory_cache[record.product_id] = record.total_quantity
        return len(records)

    def get_available_quantity(self, product_id: int) -> int:
        """Cached quantity, or 0 for a product never seen."""
        return self.inventory_cache.get(product_id, 0)

    def get_client_count(self) -> int:
        """Total live connections across all subscribers (for monitoring)."""
        return sum(len(connections) for connections in list(self.clients.values()))

    def get_subscriber_count(self) -> int:
        return len(self.clients)
