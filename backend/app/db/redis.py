"""Redis client used by the shared rate limit store"""
import logging

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def set_redis_client(client) -> None:
    """Replace the shared client (tests inject fakeredis here)"""
    global _client
    _client = client


def ping() -> bool:
    """Check Redis connectivity"""
    try:
        return bool(get_redis_client().ping())
    except redis.RedisError as e:
        logger.error(f"Redis ping failed: {e}")
        return False
