"""Tests for cache reconciliation from the authoritative warehouse totals."""
import asyncio
import pytest
from unittest.mock import Mock
from conftest import FakeWebSocket
from warehouse_sync.core.websocket import InventorySyncHub
from warehouse_sync.models.schemas import WarehouseRecord
from warehouse_sync.services.inventory_source import RedisInventorySource
from warehouse_sync.workers.reconcile_worker import reconcile_inventory, run_reconcile_loop


class TestRedisInventorySource:

    def test_fetch_reads_product_totals(self):
        redis = Mock()
        redis.scan_iter.return_value = iter(["inventory:1", "inventory:22"])
        redis.mget.return_value = ["15", "0"]

        records = RedisInventorySource(client=redis, key_prefix="inventory:").fetch()

        assert records == [
            WarehouseRecord(product_id=1, total_quantity=15),
            WarehouseRecord(product_id=22, total_quantity=0)
        ]
        redis.scan_iter.assert_called_once_with(match="inventory:*", count=500)

    def test_fetch_skips_malformed_entries(self):
        redis = Mock()
        redis.scan_iter.return_value = iter([b"inventory:1", "inventory:abc", "inventory:3", "inventory:4"])
        redis.mget.return_value = ["5", "7", "lots", None]

        records = RedisInventorySource(client=redis, key_prefix="inventory:").fetch()

        assert records == [WarehouseRecord(product_id=1, total_quantity=5)]

    def test_fetch_empty(self):
        redis = Mock()
        redis.scan_iter.return_value = iter([])

        assert RedisInventorySource(client=redis, key_prefix="inventory:").fetch() == []
        redis.mget.assert_not_called()

    def test_set_quantity(self):
        redis = Mock()

        RedisInventorySource(client=redis, key_prefix="inventory:").set_quantity(9, 30)

        redis.set.assert_called_once_with("inventory:9", 30)


class TestReconcileInventory:

    def setup_method(self):
        """Setup before each test."""
        self.hub = InventorySyncHub()
        self.source = Mock()

    def reconcile(self, broadcast):
        async def scenario():
            changed = await reconcile_inventory(self.hub, self.source, broadcast=broadcast)
            await self.hub.flush()
            return changed

        return asyncio.run(scenario())

    def test_loads_cache_and_broadcasts_changes(self):
        self.hub.load_cache_from_source([
            {"product_id": 1, "total_quantity": 10},
            {"product_id": 2, "total_quantity": 20}
        ])
        ws = FakeWebSocket()
        self.hub.clients[1] = {ws}

        self.source.fetch.return_value = [
            WarehouseRecord(product_id=1, total_quantity=10),
            WarehouseRecord(product_id=2, total_quantity=18),
            WarehouseRecord(product_id=3, total_quantity=4)
        ]

        changed = self.reconcile(broadcast=True)

        assert changed == 2
        assert self.hub.inventory_cache == {1: 10, 2: 18, 3: 4}

        assert len(ws.sent) == 1
        batch = ws.sent[0]
        assert batch["type"] == "inventory_batch_update"
        assert [(u["product_id"], u["available_quantity"]) for u in batch["updates"]] == [(2, 18), (3, 4)]
        assert all(u["action"] == "cycle_count" for u in batch["updates"])
        assert batch["updates"][0]["metadata"] == {"source": "reconciliation"}

    def test_no_broadcast_when_unchanged(self):
        self.hub.load_cache_from_source([{"product_id": 1, "total_quantity": 10}])
        ws = FakeWebSocket()
        self.hub.clients[1] = {ws}
        self.source.fetch.return_value = [WarehouseRecord(product_id=1, total_quantity=10)]

        changed = self.reconcile(broadcast=True)

        assert changed == 0
        assert ws.sent == []

    def test_load_only(self):
        ws = FakeWebSocket()
        self.hub.clients[1] = {ws}
        self.source.fetch.return_value = [WarehouseRecord(product_id=7, total_quantity=70)]

        self.reconcile(broadcast=False)

        assert self.hub.get_available_quantity(7) == 70
        assert ws.sent == []

    def test_loop_survives_source_errors(self):
        """A failing pass is logged and the next pass still runs."""
        self.source.fetch.side_effect = [
            ConnectionError("redis down"),
            [WarehouseRecord(product_id=1, total_quantity=3)],
            [WarehouseRecord(product_id=1, total_quantity=3)],
        ]

        async def scenario():
            task = asyncio.create_task(run_reconcile_loop(self.hub, self.source, 0.001))
            for _ in range(200):
                if self.source.fetch.call_count >= 2:
                    break
                await asyncio.sleep(0.005)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert self.source.fetch.call_count >= 2
        assert self.hub.get_available_quantity(1) == 3


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
