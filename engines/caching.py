"""Key-value caches for user state, question pools and leaderboards."""

import json
import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

import redis

from engines.base import Cache

logger = logging.getLogger(__name__)

# TTLs in seconds
USER_STATE_TTL = 300
QUESTION_POOL_TTL = 3600
LEADERBOARD_TTL = 10
USER_METRICS_TTL = 60


class CacheKeys:
    """Key layout shared by every cache backend."""

    @staticmethod
    def user_state(user_id: str) -> str:
        return f"user:state:{user_id}"

    @staticmethod
    def user_metrics(user_id: str) -> str:
        return f"user:metrics:{user_id}"

    @staticmethod
    def question_pool(difficulty: int) -> str:
        return f"questions:difficulty:{difficulty}"

    @staticmethod
    def leaderboard(kind: str) -> str:
        return f"leaderboard:{kind}"

    @staticmethod
    def user_rank(kind: str, user_id: str) -> str:
        return f"user:rank:{kind}:{user_id}"


class TTLCache(Cache):
    """Thread-safe LRU cache with per-entry expiry.

    Values are stored as JSON text so callers never share mutable objects
    through the cache.
    """

    def __init__(self, max_size: int = 10000, clock: Callable[[], float] = time.monotonic):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._cache: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._max_size = max_size
        self._clock = clock
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    def set(self, key: str, value: Any, ttl: int) -> None:
        """Add a value with LRU eviction."""
        payload = json.dumps(value)
        expires_at = self._clock() + float(ttl)
        with self._lock:
            if key in self._cache:
                self._cache.pop(key)
            elif len(self._cache) >= self._max_size:
                # Evict least recently used
                self._cache.popitem(last=False)
            self._cache[key] = (expires_at, payload)

    def get(self, key: str) -> Optional[Any]:
        """Retrieve a value, updating access order."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if expires_at <= self._clock():
                del self._cache[key]
                return None
            # Move to most recently used
            self._cache.move_to_end(key)
        return json.loads(payload)

    def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._cache.pop(key, None) is not None:
                    removed += 1
        return removed


class RedisCache(Cache):
    """Cache backed by a ``redis.Redis`` client.

    Build it from a URL with :meth:`from_url` or pass an existing client.
    """

    def __init__(self, client: Any):
        self.redis = client

    @classmethod
    def from_url(cls, url: str, max_connections: int = 50) -> "RedisCache":
        client = redis.Redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
        )
        return cls(client)

    def get(self, key: str) -> Optional[Any]:
        value = self.redis.get(key)
        if value is None:
            return None
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.redis.set(key, json.dumps(value), ex=int(ttl))

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self.redis.delete(*keys))

    def close(self) -> None:
        self.redis.close()


def read_quietly(cache: Cache, key: str) -> Optional[Any]:
    """Best-effort read: a broken cache behaves like a miss."""
    try:
        return cache.get(key)
    except Exception as exc:
        logger.warning("Cache read failed for %s: %s", key, exc)
        return None


def write_quietly(cache: Cache, key: str, value: Any, ttl: int) -> None:
    try:
        cache.set(key, value, ttl)
    except Exception as exc:
        logger.warning("Cache write failed for %s: %s", key, exc)


def invalidate_quietly(cache: Cache, *keys: str) -> bool:
    """Delete ``keys``; log and return ``False`` instead of raising on failure."""
    try:
        cache.delete(*keys)
        return True
    except Exception as exc:
        logger.warning("Cache invalidation failed for %s: %s", ", ".join(keys), exc)
        return False


def invalidate_after_answer(cache: Cache, user_id: str) -> Dict[str, bool]:
    """Drop everything an answer commit makes stale for ``user_id``."""
    return {
        "user_state": invalidate_quietly(cache, CacheKeys.user_state(user_id), CacheKeys.user_metrics(user_id)),
        "leaderboards": invalidate_quietly(
            cache, CacheKeys.leaderboard("score"), CacheKeys.leaderboard("streak")
        ),
        "user_ranks": invalidate_quietly(
            cache, CacheKeys.user_rank("score", user_id), CacheKeys.user_rank("streak", user_id)
        ),
    }
