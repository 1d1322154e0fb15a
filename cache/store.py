"""
cache/store.py -- Key-value cache clients backing token revocation.

The revocation store needs three primitives from its cache: write a value with
a time-to-live, read a value, and test for existence. Every entry carries a TTL
so the cache never accumulates state past the longest token lifetime.

Two implementations share the KeyValueStore protocol:
  RedisKeyValueStore  -- production. One pooled redis.Redis client per process,
                         created with mandatory socket timeouts so a stalled
                         Redis cannot hang a request.
  MemoryKeyValueStore -- local development and tests. Per-process dict guarded
                         by a lock; expired keys are dropped lazily on access.

Both raise CacheUnavailableError when the backend cannot answer. Callers decide
what that means (the session layer applies its fail-closed/fail-open policy);
this module never turns an outage into a "key not found".

Usage:
    cache = RedisKeyValueStore.from_url("redis://localhost:6379/0", timeout=0.5)
    cache.set_with_ttl("jwt.revoked.token:abc", "1700000000.0", 3600)
    cache.exists("jwt.revoked.token:abc")   # True
    cache.close()
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Sequence
from typing import Optional, Protocol

import redis

logger = logging.getLogger("watchlist.cache")


class CacheUnavailableError(Exception):
    """The cache backend could not be reached or timed out."""


class KeyValueStore(Protocol):
    """Minimal TTL key-value contract used by the revocation store."""

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    def get(self, key: str) -> Optional[str]: ...

    def get_many(self, keys: Sequence[str]) -> list[Optional[str]]: ...

    def exists(self, key: str) -> bool: ...

    def ttl(self, key: str) -> Optional[int]: ...

    def ping(self) -> None: ...

    def close(self) -> None: ...


def _check_ttl(ttl_seconds: int) -> int:
    ttl = int(ttl_seconds)
    if ttl < 1:
        raise ValueError(f"ttl_seconds must be >= 1, got {ttl_seconds!r}")
    return ttl


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisKeyValueStore:
    """Redis-backed KeyValueStore.

    The client is internally synchronized (connection pool), so one instance is
    shared by every request thread. All redis.RedisError subclasses -- including
    redis.TimeoutError and redis.ConnectionError -- are re-raised as
    CacheUnavailableError.
    """

    def __init__(self, client: redis.Redis) -> None:
        self._r = client

    @classmethod
    def from_url(cls, url: str, *, timeout: float) -> "RedisKeyValueStore":
        """Build a store with socket and connect timeouts both set to ``timeout`` seconds."""
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        try:
            # SET ... EX is a single command: value and expiry land together.
            self._r.set(key, value, ex=ttl)
        except redis.RedisError as exc:
            logger.warning("Redis SET failed for %s: %s", key, type(exc).__name__)
            raise CacheUnavailableError("cache write failed") from exc

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Write only if ``key`` is missing (SET NX EX). Returns True if this call wrote it."""
        ttl = _check_ttl(ttl_seconds)
        try:
            return bool(self._r.set(key, value, ex=ttl, nx=True))
        except redis.RedisError as exc:
            logger.warning("Redis SET NX failed for %s: %s", key, type(exc).__name__)
            raise CacheUnavailableError("cache write failed") from exc

    def get(self, key: str) -> Optional[str]:
        try:
            return self._r.get(key)
        except redis.RedisError as exc:
            logger.warning("Redis GET failed for %s: %s", key, type(exc).__name__)
            raise CacheUnavailableError("cache read failed") from exc

    def get_many(self, keys: Sequence[str]) -> list[Optional[str]]:
        """Fetch several keys in one round trip (MGET)."""
        if not keys:
            return []
        try:
            return list(self._r.mget(list(keys)))
        except redis.RedisError as exc:
            logger.warning("Redis MGET failed (%d keys): %s", len(keys), type(exc).__name__)
            raise CacheUnavailableError("cache read failed") from exc

    def exists(self, key: str) -> bool:
        try:
            return int(self._r.exists(key)) == 1
        except redis.RedisError as exc:
            logger.warning("Redis EXISTS failed for %s: %s", key, type(exc).__name__)
            raise CacheUnavailableError("cache read failed") from exc

    def ttl(self, key: str) -> Optional[int]:
        """Remaining TTL in seconds, or None if the key does not exist."""
        try:
            remaining = int(self._r.ttl(key))
        except redis.RedisError as exc:
            raise CacheUnavailableError("cache read failed") from exc
        # -2: no such key. -1: key without expiry (never written by this module).
        return remaining if remaining >= 0 else None

    def ping(self) -> None:
        try:
            self._r.ping()
        except redis.RedisError as exc:
            raise CacheUnavailableError("cache ping failed") from exc

    def close(self) -> None:
        self._r.close()


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class MemoryKeyValueStore:
    """Process-local KeyValueStore with TTL semantics matching Redis.

    ``clock`` returns seconds on a monotonic scale; tests pass a fake clock to
    step past expiry without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[tuple[str, float]]:
        # Caller holds the lock.
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry[1] <= self._clock():
            del self._data[key]
            return None
        return entry

    def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = _check_ttl(ttl_seconds)
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ttl = _check_ttl(ttl_seconds)
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
        return entry[0] if entry else None

    def get_many(self, keys: Sequence[str]) -> list[Optional[str]]:
        with self._lock:
            entries = [self._live(k) for k in keys]
        return [e[0] if e else None for e in entries]

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return math.ceil(entry[1] - self._clock())

    def purge_expired(self) -> int:
        """Drop every expired key. Returns the number of keys removed."""
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, deadline) in self._data.items() if deadline <= now]
            for k in expired:
                del self._data[k]
        return len(expired)

    def size(self) -> int:
        """Number of stored keys, including expired ones not yet purged."""
        with self._lock:
            return len(self._data)

    def ping(self) -> None:
        return None

    def close(self) -> None:
        with self._lock:
            self._data.clear()


def store_from_settings(settings) -> KeyValueStore:
    """Open the cache selected by ``settings.cache_backend`` ("redis" or "memory")."""
    if settings.cache_backend == "memory":
        logger.warning("Using in-memory revocation cache -- revocations are per-process and lost on restart")
        return MemoryKeyValueStore()
    return RedisKeyValueStore.from_url(settings.redis_url, timeout=settings.redis_timeout_seconds)
