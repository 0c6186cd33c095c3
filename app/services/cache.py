"""
Shared Cache

Key/value cache shared by every service instance. Backs the distributed
member lock and the idempotency results.

Backends:
- RedisCache when REDIS_URL is set (production, multi-instance)
- MemoryCache when REDIS_URL is not set (testing/development, single process)
"""

import threading
import time
from typing import Dict, Optional, Tuple

import structlog

from app.config import settings

logger = structlog.get_logger(__name__)


# Deletes KEYS[1] only while it still holds ARGV[1]. GET + DEL from the
# client would let a lock expire and be re-acquired in between.
COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class RedisCache:
    """
    Redis-backed shared cache.

    Usage:
        redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        cache = RedisCache(redis_client)
    """

    def __init__(self, redis_client):
        """
        Initialize cache with a Redis client.

        Args:
            redis_client: Redis client instance (from redis-py), created
                          with decode_responses=True.
        """
        self.redis = redis_client
        self._compare_and_delete = redis_client.register_script(COMPARE_AND_DELETE_SCRIPT)

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomic SET NX EX. Returns True if this call created the key."""
        return bool(self.redis.set(key, value, nx=True, ex=ttl_seconds))

    def get(self, key: str) -> Optional[str]:
        return self.redis.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.redis.set(key, value, ex=ttl_seconds)

    def delete(self, key: str) -> None:
        self.redis.delete(key)

    def exists(self, key: str) -> bool:
        return self.redis.exists(key) > 0

    def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete key only if it currently holds value. Returns True if deleted."""
        return bool(self._compare_and_delete(keys=[key], args=[value]))

    def __repr__(self) -> str:
        return "RedisCache()"


class MemoryCache:
    """
    In-process cache with the same contract as RedisCache.

    Only coordinates threads of a single process. Used when no Redis is
    configured and as the shared cache in tests.
    """

    def __init__(self):
        self._entries: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        # Caller holds self._lock
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._entries[key] = (value, time.monotonic() + ttl_seconds)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            if self._live(key) != value:
                return False
            del self._entries[key]
            return True

    def __repr__(self) -> str:
        return f"MemoryCache(entries={len(self._entries)})"


_cache = None


def get_cache():
    """
    Return the configured shared cache (created on first use).

    Returns:
        RedisCache when settings.redis_url is set, MemoryCache otherwise
    """
    global _cache

    if _cache is not None:
        return _cache

    if settings.redis_url:
        import redis

        redis_client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True
        )
        _cache = RedisCache(redis_client)
        logger.info("cache_configured", type="RedisCache")
    else:
        _cache = MemoryCache()
        logger.info("cache_configured", type="MemoryCache", mode="single_process")

    return _cache
