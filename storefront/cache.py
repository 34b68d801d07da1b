"""
Redis caching utilities for the Storefront service.

Backs the trending-products list, product view counters and recently viewed
lists. The cache is never on the order critical path: every helper logs and
returns a neutral value when Redis is unavailable.
"""
import json
import logging
from typing import Optional, Any, List
import redis
from .config import REDIS_URL

logger = logging.getLogger(__name__)

# Initialize Redis client
redis_client = redis.from_url(REDIS_URL, decode_responses=True)

# Cache TTLs (in seconds)
TRENDING_CACHE_TTL = 300  # 5 minutes
RECENTLY_VIEWED_TTL = 3600  # 1 hour
RECENTLY_VIEWED_MAX = 20


def trending_key(period: str, limit: int) -> str:
    return f"analytics:trending:{period}:{limit}"


def product_views_key(product_id: int) -> str:
    return f"product:views:{product_id}"


def recently_viewed_key(user_id: int) -> str:
    return f"user:{user_id}:recently-viewed"


def get_cache(key: str) -> Optional[Any]:
    """Decoded JSON value for ``key``, or None on a miss or Redis error."""
    try:
        raw = redis_client.get(key)
        return json.loads(raw) if raw else None
    except Exception as e:
        logger.warning(f"Cache get error for {key}: {e}")
        return None


def set_cache(key: str, value: Any, ttl: int = TRENDING_CACHE_TTL) -> bool:
    """
    Store a JSON-serializable value that expires after ``ttl`` seconds.

    Returns:
        False if Redis rejected the write
    """
    try:
        redis_client.setex(key, ttl, json.dumps(value))
        return True
    except Exception as e:
        logger.warning(f"Cache set error for {key}: {e}")
        return False


def increment(key: str) -> Optional[int]:
    """Increment a counter, returning the new value or None on error."""
    try:
        return int(redis_client.incr(key))
    except Exception as e:
        logger.warning(f"Cache increment error for {key}: {e}")
        return None


def delete_cache(key: str) -> bool:
    try:
        redis_client.delete(key)
        return True
    except Exception as e:
        logger.warning(f"Cache delete error for {key}: {e}")
        return False


def delete_pattern(pattern: str) -> bool:
    """Drop every key matching a glob, e.g. all cached trending lists."""
    try:
        matched = redis_client.keys(pattern)
        if matched:
            redis_client.delete(*matched)
        return True
    except Exception as e:
        logger.warning(f"Cache delete pattern error for {pattern}: {e}")
        return False


def push_recently_viewed(user_id: int, product_id: int) -> List[int]:
    """
    Move a product to the front of the user's recently viewed list.

    Args:
        user_id: Viewer
        product_id: Viewed product

    Returns:
        The updated list, most recent first
    """
    key = recently_viewed_key(user_id)
    existing = get_cache(key) or []
    updated = [product_id] + [pid for pid in existing if pid != product_id]
    updated = updated[:RECENTLY_VIEWED_MAX]
    set_cache(key, updated, RECENTLY_VIEWED_TTL)
    return updated


def get_recently_viewed(user_id: int) -> List[int]:
    return get_cache(recently_viewed_key(user_id)) or []
