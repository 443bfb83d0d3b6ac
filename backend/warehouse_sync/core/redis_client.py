import redis
from typing import Optional
from warehouse_sync.core.config import get_settings

settings = get_settings()

# Shared client; the warehouse totals and rate-limit windows live here
_redis_client: Optional[redis.Redis] = None


def get_redis_client() -> redis.Redis:
    """Get or create Redis client instance."""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=settings.REDIS_DECODE_RESPONSES,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30
        )

    return _redis_client


def close_redis_client():
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        _redis_client.close()
        _redis_client = None


def inventory_key(product_id: int, prefix: Optional[str] = None) -> str:
    """Key holding a product's authoritative warehouse total."""
    return f"{prefix or settings.INVENTORY_KEY_PREFIX}{product_id}"


def redis_status() -> str:
    """'healthy', or 'unhealthy: <reason>' for the health endpoint."""
    try:
        get_redis_client().ping()
    except redis.RedisError as e:
        return f"unhealthy: {str(e)}"
    return "healthy"
