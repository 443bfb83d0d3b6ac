from typing import List, Optional
import logging

import redis

from warehouse_sync.core.config import get_settings
from warehouse_sync.core.redis_client import get_redis_client, inventory_key
from warehouse_sync.models.schemas import WarehouseRecord

logger = logging.getLogger(__name__)
settings = get_settings()


class RedisInventorySource:
    """
    Authoritative per-product totals maintained by the warehouse operations
    system, stored as integers under `inventory:<product_id>`.
    """

    def __init__(self, client: Optional[redis.Redis] = None, key_prefix: Optional[str] = None):
        self.redis = client or get_redis_client()
        self.key_prefix = key_prefix or settings.INVENTORY_KEY_PREFIX

    def _get_inventory_key(self, product_id: int) -> str:
        """Get Redis key for a product's total."""
        return inventory_key(product_id, self.key_prefix)

    def fetch(self) -> List[WarehouseRecord]:
        """
        Read every product total.

        Keys whose suffix is not a product id, and values that are not
        integers, are skipped.
        """
        keys = list(self.redis.scan_iter(match=f"{self.key_prefix}*", count=500))
        if not keys:
            return []

        values = self.redis.mget(keys)

        records = []
        for key, value in zip(keys, values):
            if value is None:
                # Deleted between SCAN and MGET
                continue

            if isinstance(key, bytes):
                key = key.decode()
            try:
                product_id = int(key[len(self.key_prefix):])
                quantity = int(value)
            except ValueError:
                logger.warning(f"Skipping malformed inventory entry {key!r} = {value!r}")
                continue

            records.append(WarehouseRecord(product_id=product_id, total_quantity=quantity))

        return records

    def set_quantity(self, product_id: int, quantity: int):
        """Write a product total (used by scripts and fixtures)."""
        self.redis.set(self._get_inventory_key(product_id), quantity)
