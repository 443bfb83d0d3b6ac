from functools import wraps
from fastapi import HTTPException, Request
from redis.exceptions import RedisError
from warehouse_sync.core.redis_client import get_redis_client
from warehouse_sync.core.config import get_settings
import logging

logger = logging.getLogger(__name__)
settings = get_settings()


def _check_window(redis, rate_key: str, max_requests: int, window_seconds: int):
    """Count one request in the current window. Returns seconds to wait if over the limit."""
    current = redis.get(rate_key)

    if current is None:
        # First request in window
        pipe = redis.pipeline()
        pipe.setex(rate_key, window_seconds, 1)
        pipe.execute()
        return None

    if int(current) >= max_requests:
        ttl = redis.ttl(rate_key)
        return ttl if ttl > 0 else window_seconds

    redis.incr(rate_key)
    return None


def rate_limit(max_requests: int = None, window_seconds: int = 60):
    """
    Rate limiting decorator using Redis.

    Fixed window per (user, path). Scanners on the warehouse floor post a
    change per scan, so the default allowance is generous. If Redis is
    unreachable the request is let through.

    Args:
        max_requests: Maximum requests allowed in window (default from settings)
        window_seconds: Time window in seconds (default 60)
    """
    if max_requests is None:
        max_requests = settings.RATE_LIMIT_PER_MINUTE

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request: Request = kwargs.get('request')
            user_id: str = kwargs.get('current_user')

            if not request or not user_id:
                return await func(*args, **kwargs)

            endpoint = request.url.path
            rate_key = f"ratelimit:{user_id}:{endpoint}"

            try:
                retry_after = _check_window(get_redis_client(), rate_key, max_requests, window_seconds)
            except RedisError as e:
                logger.warning(f"Rate limiter unavailable, allowing request: {e}")
                retry_after = None

            if retry_after is not None:
                logger.warning(f"Rate limit exceeded for user {user_id} on {endpoint}")

                raise HTTPException(
                    status_code=429,
                    detail={
                        "type": "https://api.warehouse-sync.example/errors/rate-limit",
                        "title": "Rate limit exceeded",
                        "status": 429,
                        "retry_after": retry_after,
                        "detail": f"Try again in {retry_after} seconds"
                    }
                )

            return await func(*args, **kwargs)

        return wrapper

    return decorator
