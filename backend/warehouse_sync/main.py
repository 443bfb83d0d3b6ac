from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import asyncio
import logging
import time
import uuid

from warehouse_sync.api.routes import warehouse
from warehouse_sync.core.config import get_settings
from warehouse_sync.core.database import init_db
from warehouse_sync.core.redis_client import close_redis_client, redis_status
from warehouse_sync.core.websocket import InventorySyncHub
from warehouse_sync.services.inventory_source import RedisInventorySource
from warehouse_sync.workers.reconcile_worker import reconcile_inventory, run_reconcile_loop

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

settings = get_settings()


async def _start_reconciliation(app: FastAPI, hub: InventorySyncHub, inventory_source):
    """Load the cache once and start the periodic reconciliation task."""
    try:
        source = inventory_source or RedisInventorySource()
    except Exception as e:
        logger.error(f"Failed to create inventory source: {str(e)}", exc_info=True)
        return

    if settings.RECONCILE_ON_STARTUP:
        try:
            await reconcile_inventory(hub, source, broadcast=False)
        except Exception as e:
            logger.error(f"Failed to load inventory cache: {str(e)}", exc_info=True)

    if settings.RECONCILE_INTERVAL_SECONDS > 0:
        app.state.reconcile_task = asyncio.create_task(
            run_reconcile_loop(
                hub,
                source,
                settings.RECONCILE_INTERVAL_SECONDS,
                broadcast=settings.RECONCILE_BROADCAST
            )
        )


def create_app(hub: InventorySyncHub = None, inventory_source=None) -> FastAPI:
    """
    Build the application around one inventory sync hub.

    Args:
        hub: Hub to serve (a fresh one is created if omitted)
        inventory_source: Authoritative totals for reconciliation
            (Redis-backed by default)
    """
    hub = hub or InventorySyncHub()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize database and inventory cache; clean up on shutdown."""
        logger.info(f"Starting {settings.APP_NAME} v{settings.VERSION}")

        try:
            init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {str(e)}", exc_info=True)

        if settings.RECONCILE_ON_STARTUP or settings.RECONCILE_INTERVAL_SECONDS > 0:
            await _start_reconciliation(app, hub, inventory_source)

        yield

        logger.info("Shutting down application")

        task = app.state.reconcile_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.reconcile_task = None

        if not await hub.flush(timeout=settings.SYNC_SHUTDOWN_FLUSH_SECONDS):
            logger.warning("Dropping undelivered inventory events on shutdown")
        hub.shutdown()

        close_redis_client()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.VERSION,
        description="Real-time warehouse inventory sync",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan
    )
    app.state.sync_hub = hub
    app.state.reconcile_task = None

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, specify exact origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        """Add unique request ID to all requests for tracing."""
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        start_time = time.time()

        response = await call_next(request)

        process_time = time.time() - start_time

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)

        logger.info(
            f"[{request_id}] {request.method} {request.url.path} - "
            f"Status: {response.status_code} - Time: {process_time:.3f}s"
        )

        return response

    # Exception handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors with RFC 7807 format."""
        errors = []
        for error in exc.errors():
            field = ".".join(str(x) for x in error["loc"] if x != "body")
            errors.append({
                "field": field,
                "message": error["msg"]
            })

        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "type": "https://api.warehouse-sync.example/errors/validation",
                "title": "Invalid request",
                "status": 400,
                "detail": "Request validation failed",
                "errors": errors,
                "trace_id": getattr(request.state, "request_id", None)
            }
        )

    # Health check
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "redis": redis_status(),
            "connected_clients": hub.get_client_count()
        }

    # Include routers
    app.include_router(warehouse.router)

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.APP_NAME,
            "version": settings.VERSION,
            "docs": "/api/docs",
            "health": "/health"
        }

    # Registered last; the default path matches every WebSocket URL
    hub.initialize(app, settings.WAREHOUSE_SYNC_PATH)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "warehouse_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
