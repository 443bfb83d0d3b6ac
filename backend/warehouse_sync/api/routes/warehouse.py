from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session
from datetime import datetime, timezone
import uuid
import logging

from warehouse_sync.core.websocket import InventorySyncHub
from warehouse_sync.models.schemas import (
    BatchUpdateRequest,
    BatchUpdateResponse,
    CacheLoadRequest,
    CacheLoadResponse,
    InventoryAction,
    InventoryChange,
    InventoryUpdateRequest,
    InventoryUpdateResponse,
    LiveInventoryItem,
    LiveInventoryResponse,
    ProblemDetail,
    SyncStatusResponse,
)
from warehouse_sync.core.auth import get_current_user
from warehouse_sync.core.database import get_db, InventoryAuditLog
from warehouse_sync.api.middleware.rate_limiter import rate_limit
from warehouse_sync.core.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter(prefix="/api/v1/warehouse", tags=["Warehouse"])


def get_sync_hub(request: Request) -> InventorySyncHub:
    """Dependency returning the application's inventory sync hub."""
    return request.app.state.sync_hub


def _internal_error(trace_id: str, detail: str) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={
            "type": "https://api.warehouse-sync.example/errors/internal-error",
            "title": "Internal server error",
            "status": 500,
            "detail": detail,
            "trace_id": trace_id
        }
    )


def _record_audit(db: Session, trace_id: str, entries):
    """Write audit rows. Failures are logged, the change already applied."""
    try:
        db.add_all(entries)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"[{trace_id}] Failed to write inventory audit log: {str(e)}", exc_info=True)


def _live_item(product_id: int, quantity: int, now: datetime) -> LiveInventoryItem:
    return LiveInventoryItem(
        product_id=product_id,
        available_quantity=quantity,
        low_stock=quantity < settings.LOW_STOCK_THRESHOLD,
        last_updated=now
    )


@router.get("/sync-status", response_model=SyncStatusResponse)
async def get_sync_status(
    request: Request,
    current_user: str = Depends(get_current_user),
    hub: InventorySyncHub = Depends(get_sync_hub)
):
    """Connected client count and how to reach the sync socket."""
    scheme = "wss" if request.url.scheme == "https" else "ws"

    return SyncStatusResponse(
        sync_enabled=True,
        connected_clients=hub.get_client_count(),
        subscribers=hub.get_subscriber_count(),
        sync_type="websocket",
        url=f"{scheme}://{request.url.netloc}",
        message="Real-time inventory updates enabled. Connect a WebSocket and send a subscribe message."
    )


@router.get("/live-inventory", response_model=LiveInventoryResponse)
async def get_live_inventory(
    current_user: str = Depends(get_current_user),
    hub: InventorySyncHub = Depends(get_sync_hub)
):
    """Current cached quantity of every known product."""
    now = datetime.now(timezone.utc)
    inventory = [
        _live_item(level.product_id, level.available_quantity, now)
        for level in hub.get_snapshot()
    ]

    return LiveInventoryResponse(
        timestamp=now,
        total_products=len(inventory),
        inventory=inventory
    )


@router.get("/live-inventory/{product_id}", response_model=LiveInventoryItem)
async def get_live_inventory_item(
    product_id: int,
    current_user: str = Depends(get_current_user),
    hub: InventorySyncHub = Depends(get_sync_hub)
):
    """Cached quantity of one product. Unknown products report 0."""
    return _live_item(product_id, hub.get_available_quantity(product_id), datetime.now(timezone.utc))


@router.post(
    "/inventory/batch",
    response_model=BatchUpdateResponse,
    responses={
        200: {"description": "Batch applied and broadcast"},
        400: {"model": ProblemDetail, "description": "Invalid request"},
        429: {"model": ProblemDetail, "description": "Rate limit exceeded"}
    }
)
@rate_limit()
async def batch_update_inventory(
    request: Request,
    payload: BatchUpdateRequest,
    current_user: str = Depends(get_current_user),
    hub: InventorySyncHub = Depends(get_sync_hub),
    db: Session = Depends(get_db)
):
    """
    Apply a warehouse operation that touched many products and push it to
    clients as one event.
    """
    trace_id = str(uuid.uuid4())

    try:
        changes = [
            InventoryChange(
                product_id=item.product_id,
                new_quantity=item.new_quantity,
                action=item.action.value,
                metadata=item.metadata
            )
            for item in payload.updates
        ]

        recipients = await hub.broadcast_batch_update(changes)

    except Exception as e:
        logger.error(f"[{trace_id}] Error applying batch update: {str(e)}", exc_info=True)
        raise _internal_error(trace_id, "An unexpected error occurred while applying the batch")

    logger.info(f"[{trace_id}] User {current_user} applied batch of {len(changes)} inventory updates")

    _record_audit(db, trace_id, [
        InventoryAuditLog(
            event_type=change.action,
            user_id=current_user,
            product_id=change.product_id,
            details={
                "new_quantity": change.new_quantity,
                "metadata": change.metadata,
                "batch_size": len(changes)
            }
        )
        for change in changes
    ])

    return BatchUpdateResponse(updated=len(changes), recipients=recipients)


@router.post(
    "/inventory/reconcile",
    response_model=CacheLoadResponse,
    responses={
        200: {"description": "Cache loaded"},
        400: {"model": ProblemDetail, "description": "Invalid request"},
        429: {"model": ProblemDetail, "description": "Rate limit exceeded"}
    }
)
@rate_limit()
async def reconcile_inventory_cache(
    request: Request,
    payload: CacheLoadRequest,
    current_user: str = Depends(get_current_user),
    hub: InventorySyncHub = Depends(get_sync_hub),
    db: Session = Depends(get_db)
):
    """
    Overwrite cached quantities from an authoritative warehouse snapshot.

    Clients only see the new values when `broadcast` is set; they are then
    pushed as one cycle-count batch.
    """
    trace_id = str(uuid.uuid4())

    try:
        loaded = hub.load_cache_from_source(payload.items)

        recipients = 0
        if payload.broadcast and payload.items:
            recipients = await hub.broadcast_batch_update([
                InventoryChange(
                    product_id=item.product_id,
                    new_quantity=item.total_quantity,
                    action=InventoryAction.CYCLE_COUNT.value,
                    metadata={"source": "reconciliation"}
                )
                for item in payload.items
            ])

    except Exception as e:
        logger.error(f"[{trace_id}] Error loading inventory cache: {str(e)}", exc_info=True)
        raise _internal_error(trace_id, "An unexpected error occurred while loading the cache")

    logger.info(f"[{trace_id}] User {current_user} loaded {loaded} products into the inventory cache")

    _record_audit(db, trace_id, [
        InventoryAuditLog(
            event_type="cache_load",
            user_id=current_user,
            details={"loaded": loaded, "broadcast": payload.broadcast}
        )
    ])

    return CacheLoadResponse(loaded=loaded, broadcast=payload.broadcast, recipients=recipients)


@router.post(
    "/inventory/{product_id}",
    response_model=InventoryUpdateResponse,
    responses={
        200: {"description": "Update applied and broadcast"},
        400: {"model": ProblemDetail, "description": "Invalid request"},
        429: {"model": ProblemDetail, "description": "Rate limit exceeded"}
    }
)
@rate_limit()
async def update_inventory(
    request: Request,
    product_id: int,
    payload: InventoryUpdateRequest,
    current_user: str = Depends(get_current_user),
    hub: InventorySyncHub = Depends(get_sync_hub),
    db: Session = Depends(get_db)
):
    """
    Record a product's new available quantity after a receive, pick, cycle
    count, reserve or release, and push it to every connected client.
    """
    trace_id = str(uuid.uuid4())

    try:
        recipients = await hub.broadcast_update(
            product_id,
            payload.new_quantity,
            payload.action.value,
            payload.metadata
        )

    except Exception as e:
        logger.error(f"[{trace_id}] Error updating inventory for product {product_id}: {str(e)}", exc_info=True)
        raise _internal_error(trace_id, "An unexpected error occurred while updating inventory")

    logger.info(
        f"[{trace_id}] User {current_user} set product {product_id} to "
        f"{payload.new_quantity} units ({payload.action.value})"
    )

    _record_audit(db, trace_id, [
        InventoryAuditLog(
            event_type=payload.action.value,
            user_id=current_user,
            product_id=product_id,
            details={"new_quantity": payload.new_quantity, "metadata": payload.metadata}
        )
    ])

    return InventoryUpdateResponse(
        product_id=product_id,
        available_quantity=payload.new_quantity,
        action=payload.action,
        recipients=recipients
    )
