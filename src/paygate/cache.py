"""Short-TTL key-value cache used for verification sessions and health checks."""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

_MISSING = object()
LOCK_STRIPES = 64


class Cache(ABC):
    """Cache interface consumed by the orchestrator and drivers."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    @abstractmethod
    def put(self, key: str, value: Any, ttl: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_or_compute(self, key: str, ttl: int, producer: Callable[[], Any]) -> Any:
        """Return the cached value, calling ``producer`` at most once per TTL window."""
        raise NotImplementedError


class InMemoryCache(Cache):
    """Process-local cache with per-key single-flight computation."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        # fixed pool so the lock set stays bounded however many keys pass through
        self._key_locks: List[threading.RLock] = [threading.RLock() for _ in range(LOCK_STRIPES)]

    def _lookup(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return _MISSING
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return _MISSING
            return value

    def get(self, key: str, default: Any = None) -> Any:
        value = self._lookup(key)
        return default if value is _MISSING else value

    def put(self, key: str, value: Any, ttl: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _key_lock(self, key: str) -> threading.RLock:
        return self._key_locks[hash(key) % len(self._key_locks)]

    def get_or_compute(self, key: str, ttl: int, producer: Callable[[], Any]) -> Any:
        value = self._lookup(key)
        if value is not _MISSING:
            return value
        with self._key_lock(key):
            # another caller may have filled the entry while we waited
            value = self._lookup(key)
            if value is not _MISSING:
                return value
            value = producer()
            self.put(key, value, ttl)
            return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCache(Cache):
    """Redis-backed cache. Values are stored as JSON."""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        url: Optional[str] = None,
        key_prefix: str = "paygate:",
        lock_timeout: int = 30,
    ):
        if client is None:
            if not url:
                raise ValueError("RedisCache requires a client or a url")
            client = redis.Redis.from_url(url, decode_responses=True)
        self.client = client
        self.key_prefix = key_prefix
        self.lock_timeout = lock_timeout

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        raw = self.client.get(self._key(key))
        if raw is None:
            return default
        return json.loads(raw)

    def put(self, key: str, value: Any, ttl: int) -> None:
        self.client.set(self._key(key), json.dumps(value), ex=max(int(ttl), 1))

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))

    def get_or_compute(self, key: str, ttl: int, producer: Callable[[], Any]) -> Any:
        raw = self.client.get(self._key(key))
        if raw is not None:
            return json.loads(raw)
        with self.client.lock(
            self._key(f"lock:{key}"),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_timeout,
        ):
            raw = self.client.get(self._key(key))
            if raw is not None:
                return json.loads(raw)
            value = producer()
            self.put(key, value, ttl)
            logger.debug(f"Computed cache entry {key} (ttl={ttl}s)")
            return value


def create_cache(redis_url: Optional[str] = None) -> Cache:
    """Build the configured cache backend; in-memory when no Redis URL is set."""
    if redis_url:
        logger.info("Using Redis cache backend")
        return RedisCache(url=redis_url)
    return InMemoryCache()
