"""
Redis caching utilities for the orders service.

Caches user display info used to enrich order listings. Caching is off when
``REDIS_URL`` is empty, and cache failures behave like misses.
"""
import json
import logging
from typing import Optional, Any
import redis

from .config import REDIS_URL, USER_CACHE_TTL

logger = logging.getLogger(__name__)

redis_client = redis.from_url(REDIS_URL, decode_responses=True) if REDIS_URL else None


def user_key(user_id: str) -> str:
    return f"users:{user_id}"


def get_cache(key: str) -> Optional[Any]:
    """
    Get a value from Redis cache.

    Args:
        key: Cache key

    Returns:
        Cached value or None if not found
    """
    if redis_client is None:
        return None
    try:
        value = redis_client.get(key)
        if value:
            return json.loads(value)
        return None
    except (redis.RedisError, ValueError) as e:
        logger.warning(f"Cache get error for {key}: {e}")
        return None


def set_cache(key: str, value: Any, ttl: int = USER_CACHE_TTL) -> bool:
    """
    Set a value in Redis cache with TTL.

    Args:
        key: Cache key
        value: Value to cache (will be JSON serialized)
        ttl: Time to live in seconds

    Returns:
        True if successful, False otherwise
    """
    if redis_client is None:
        return False
    try:
        redis_client.setex(key, ttl, json.dumps(value))
        return True
    except redis.RedisError as e:
        logger.warning(f"Cache set error for {key}: {e}")
        return False
