"""Caching Module.

Provides caching infrastructure:
- Process-local cache with TTL, LRU eviction and stale reads
- Shared Redis-backed cache
- Cache statistics
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], float]


class CacheTier(Enum):
    LOCAL = "local"
    SHARED = "shared"


@dataclass
class CacheEntry(Generic[T]):
    """A cached value with its tier, insertion time and TTL."""

    key: str
    value: T
    tier: CacheTier = CacheTier.LOCAL
    created_at: float = field(default_factory=time.monotonic)
    ttl: Optional[float] = None
    last_accessed: float = field(default_factory=time.monotonic)
    access_count: int = 0

    @property
    def expires_at(self) -> Optional[float]:
        if self.ttl is None:
            return None
        return self.created_at + self.ttl

    def is_expired(self, now: float) -> bool:
        expires_at = self.expires_at
        return expires_at is not None and now >= expires_at

    def age_seconds(self, now: float) -> float:
        return now - self.created_at

    def touch(self, now: float) -> None:
        self.last_accessed = now
        self.access_count += 1


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    errors: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "evictions": self.evictions,
            "expirations": self.expirations,
            "errors": self.errors,
            "hit_rate": self.hit_rate,
            "size": self.size,
            "max_size": self.max_size,
        }


class CacheBackend(ABC):
    """Abstract cache backend."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        """Get a live value, or None on miss or expiry."""
        pass

    @abstractmethod
    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
    ) -> bool:
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass

    @abstractmethod
    def get_stats(self) -> CacheStats:
        pass


class InMemoryCache(CacheBackend):
    """Per-process cache.

    With ``retain_expired`` set, expired entries count as misses for
    ``get`` but stay readable through ``get_entry`` until they are deleted
    or evicted, so a caller can fall back to them.
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: Optional[float] = None,
        retain_expired: bool = False,
        clock: Clock = time.monotonic,
        tier: CacheTier = CacheTier.LOCAL,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._max_size = max_size
        self._default_ttl = default_ttl
        self._retain_expired = retain_expired
        self._clock = clock
        self._tier = tier
        self._cache: Dict[str, CacheEntry] = {}
        self._stats = CacheStats(max_size=max_size)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._cache.get(key)
            now = self._clock()

            if entry is None:
                self._stats.misses += 1
                return None

            if entry.is_expired(now):
                if not self._retain_expired:
                    del self._cache[key]
                    self._stats.size = len(self._cache)
                self._stats.misses += 1
                self._stats.expirations += 1
                return None

            entry.touch(now)
            self._stats.hits += 1
            return entry.value

    async def get_entry(self, key: str) -> Optional[CacheEntry]:
        """Raw entry, expired or not. Does not touch hit/miss counters."""
        async with self._lock:
            return self._cache.get(key)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
    ) -> bool:
        async with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                self._evict()

            now = self._clock()
            self._cache[key] = CacheEntry(
                key=key,
                value=value,
                tier=self._tier,
                created_at=now,
                ttl=ttl if ttl is not None else self._default_ttl,
                last_accessed=now,
            )
            self._stats.size = len(self._cache)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key in self._cache:
                del self._cache[key]
                self._stats.size = len(self._cache)
                return True
            return False

    async def exists(self, key: str) -> bool:
        async with self._lock:
            entry = self._cache.get(key)
            return entry is not None and not entry.is_expired(self._clock())

    async def clear(self) -> None:
        async with self._lock:
            self._cache.clear()
            self._stats.size = 0

    def get_stats(self) -> CacheStats:
        return self._stats

    def _evict(self) -> None:
        """Drop an expired entry if there is one, else the least recently used."""
        if not self._cache:
            return

        now = self._clock()
        expired = [k for k, e in self._cache.items() if e.is_expired(now)]
        if expired:
            key = min(expired, key=lambda k: self._cache[k].created_at)
        else:
            key = min(self._cache.keys(), key=lambda k: self._cache[k].last_accessed)

        del self._cache[key]
        self._stats.evictions += 1
        self._stats.size = len(self._cache)


class RedisCache(CacheBackend):
    """Shared cache on Redis.

    Values are stored as JSON. Redis failures are logged and reported as a
    miss or a failed write; they never propagate.
    """

    def __init__(
        self,
        redis_client: Any,
        key_prefix: str = "flags",
        default_ttl: Optional[float] = None,
    ):
        self._redis = redis_client
        self._prefix = key_prefix
        self._default_ttl = default_ttl
        self._stats = CacheStats()

    def _make_key(self, key: str) -> str:
        if self._prefix:
            return f"{self._prefix}:{key}"
        return key

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(self._make_key(key))
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"Redis get failed {key}: {e}")
            return None

        if raw is None:
            self._stats.misses += 1
            return None

        try:
            value = json.loads(raw)
        except ValueError as e:
            self._stats.errors += 1
            logger.warning(f"Discarding undecodable cache value for {key}: {e}")
            return None

        self._stats.hits += 1
        return value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
    ) -> bool:
        effective_ttl = ttl if ttl is not None else self._default_ttl
        px = max(1, int(effective_ttl * 1000)) if effective_ttl is not None else None
        try:
            await self._redis.set(self._make_key(key), json.dumps(value, default=str), px=px)
            return True
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"Redis set failed {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._redis.delete(self._make_key(key)))
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"Redis delete failed {key}: {e}")
            return False

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._redis.exists(self._make_key(key)))
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"Redis exists failed {key}: {e}")
            return False

    async def clear(self) -> None:
        """Delete every key under this cache's prefix."""
        pattern = f"{self._prefix}:*" if self._prefix else "*"
        try:
            async for redis_key in self._redis.scan_iter(match=pattern):
                await self._redis.delete(redis_key)
        except RedisError as e:
            self._stats.errors += 1
            logger.warning(f"Redis clear failed for {pattern}: {e}")

    def get_stats(self) -> CacheStats:
        return self._stats


__all__ = [
    "CacheTier",
    "CacheEntry",
    "CacheStats",
    "CacheBackend",
    "InMemoryCache",
    "RedisCache",
]
