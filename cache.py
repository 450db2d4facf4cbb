import time
import logging
import threading
from typing import Any, Callable, Dict, Optional

import redis

from models import CacheEntry

logger = logging.getLogger(__name__)

SCHEMA_KEY_PREFIX = "schema"


def generate_schema_key(user_id: Any, connection_id: Any) -> str:
    """Cache key for one user's connection schema. Anything invalidating a schema must use this."""
    return f"{SCHEMA_KEY_PREFIX}:{user_id}:{connection_id}"


def _check_ttl(ttl_seconds: float) -> float:
    if ttl_seconds is None or ttl_seconds <= 0:
        raise ValueError(f"TTL must be a positive number of seconds, got {ttl_seconds!r}")
    return ttl_seconds


class SchemaCache:
    """
    In-process key/value store with a per-entry time-to-live.

    Expired entries are purged lazily when read and are never returned.
    Every operation runs under a single lock; callers never hold it across I/O.
    """

    def __init__(self, default_ttl: float = 600, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = _check_ttl(default_ttl)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        """Store a value, replacing any previous entry and restarting its expiry clock."""
        ttl = _check_ttl(self.default_ttl if ttl_seconds is None else ttl_seconds)
        entry = CacheEntry(key=key, value=value, created_at=self._clock(), ttl_seconds=ttl)
        with self._lock:
            self._entries[key] = entry
        logger.debug(f"Cached {key} for {ttl}s")

    def _get_locked(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock()):
            del self._entries[key]
            logger.debug(f"Expired {key}")
            return None
        return entry.value

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._get_locked(key)

    def has(self, key: str) -> bool:
        with self._lock:
            return self._get_locked(key) is not None

    def delete(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug(f"Deleted {key}")
        return removed

    def clear(self):
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            now = self._clock()
            stale = [key for key, entry in self._entries.items() if not entry.is_fresh(now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def get_stats(self) -> Dict[str, Any]:
        self.purge_expired()
        with self._lock:
            keys = sorted(self._entries)
        return {"backend": "memory", "size": len(keys), "keys": keys}


class RedisSchemaCache:
    """Same contract as SchemaCache, with expiry delegated to Redis."""

    def __init__(self, client: redis.Redis, default_ttl: float = 600):
        self.client = client
        self.default_ttl = _check_ttl(default_ttl)

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None):
        ttl = _check_ttl(self.default_ttl if ttl_seconds is None else ttl_seconds)
        if float(ttl).is_integer():
            self.client.setex(key, int(ttl), value)
        else:
            self.client.psetex(key, int(ttl * 1000), value)
        logger.debug(f"Cached {key} in Redis for {ttl}s")

    def get(self, key: str) -> Optional[Any]:
        return self.client.get(key)

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> bool:
        return bool(self.client.delete(key))

    def clear(self):
        keys = list(self.client.scan_iter(match=f"{SCHEMA_KEY_PREFIX}:*"))
        if keys:
            self.client.delete(*keys)

    def purge_expired(self) -> int:
        # Redis evicts expired keys itself.
        return 0

    def get_stats(self) -> Dict[str, Any]:
        keys = sorted(self.client.scan_iter(match=f"{SCHEMA_KEY_PREFIX}:*"))
        return {"backend": "redis", "size": len(keys), "keys": keys}


def build_schema_cache(settings) -> Any:
    """Create the process-wide schema cache from settings, falling back to memory if Redis is down."""
    if settings.CACHE_BACKEND == "redis":
        try:
            client = redis.Redis(
                host=settings.REDIS_HOST,
                port=settings.REDIS_PORT,
                db=settings.REDIS_DB,
                decode_responses=True
            )
            client.ping()
            logger.info("Successfully connected to Redis, schema cache is shared.")
            return RedisSchemaCache(client, default_ttl=settings.SCHEMA_CACHE_TTL)
        except redis.exceptions.RedisError as e:
            logger.warning(f"Could not connect to Redis: {e}. Using in-memory schema cache.")
    return SchemaCache(default_ttl=settings.SCHEMA_CACHE_TTL)
