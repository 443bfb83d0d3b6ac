from pydantic import BaseModel, Field
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime
from enum import Enum


class InventoryAction(str, Enum):
    """Why an available quantity changed. Carried through to clients for display."""
    RECEIVE = "receive"
    PICK = "pick"
    CYCLE_COUNT = "cycle_count"
    RESERVE = "reserve"
    RELEASE = "release"


# Hub data
class InventoryChange(BaseModel):
    """One quantity change handed to the hub by a warehouse operation."""
    product_id: int
    new_quantity: int
    action: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WarehouseRecord(BaseModel):
    """Row of an authoritative warehouse snapshot."""
    product_id: int
    total_quantity: int


class InventoryLevel(BaseModel):
    product_id: int
    available_quantity: int


class InventoryUpdatePayload(InventoryLevel):
    action: str
    metadata: Dict[str, Any] = Field(default_factory=dict)


# WebSocket messages
class SubscribeMessage(BaseModel):
    """Inbound client message: {"type": "subscribe", "userId": <number>}."""
    type: Literal["subscribe"]
    userId: int


class InventorySnapshotEvent(BaseModel):
    type: Literal["inventory_snapshot"] = "inventory_snapshot"
    timestamp: str
    data: List[InventoryLevel]


class InventoryUpdateEvent(InventoryUpdatePayload):
    type: Literal["inventory_update"] = "inventory_update"
    timestamp: str


class InventoryBatchUpdateEvent(BaseModel):
    type: Literal["inventory_batch_update"] = "inventory_batch_update"
    timestamp: str
    updates: List[InventoryUpdatePayload]


# Request Models
class InventoryUpdateRequest(BaseModel):
    """Request model for a single product quantity change."""
    new_quantity: int
    action: InventoryAction
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BatchUpdateItem(InventoryUpdateRequest):
    product_id: int


class BatchUpdateRequest(BaseModel):
    """Request model for a warehouse operation touching many products."""
    updates: List[BatchUpdateItem] = Field(..., min_length=1, max_length=5000)


class CacheLoadRequest(BaseModel):
    """Request model for loading the cache from an authoritative snapshot."""
    items: List[WarehouseRecord]
    broadcast: bool = False


# Response Models
class InventoryUpdateResponse(BaseModel):
    product_id: int
    available_quantity: int
    action: InventoryAction
    recipients: int


class BatchUpdateResponse(BaseModel):
    updated: int
    recipients: int


class CacheLoadResponse(BaseModel):
    loaded: int
    broadcast: bool
    recipients: int


class LiveInventoryItem(InventoryLevel):
    low_stock: bool
    last_updated: datetime


class LiveInventoryResponse(BaseModel):
    timestamp: datetime
    total_products: int
    inventory: List[LiveInventoryItem]


class SyncStatusResponse(BaseModel):
    sync_enabled: bool
    connected_clients: int
    subscribers: int
    sync_type: str
    url: str
    message: str


# Error Models (RFC 7807)
class ErrorDetail(BaseModel):
    """Individual error detail."""
    field: str
    message: str


class ProblemDetail(BaseModel):
    """RFC 7807 Problem Details for HTTP APIs."""
    type: str
    title: str
    status: int
    detail: str
    trace_id: Optional[str] = None
    errors: Optional[List[ErrorDetail]] = None
    retry_after: Optional[int] = None  # For rate limiting


class UserClaims(BaseModel):
    """JWT token claims."""
    sub: str  # user_id
    exp: int  # expiration timestamp
    iat: int  # issued at timestamp
