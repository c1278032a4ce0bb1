"""Two-tier flag cache.

L1 is per-process memory (short TTL); L2 is a shared backend such as Redis
(longer TTL). Reads fall through L1 -> L2 -> store; invalidations purge
both tiers locally and are broadcast to other instances over the bus.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Optional

from flagengine.core.caching import CacheBackend, CacheTier, InMemoryCache
from flagengine.core.errors import InvalidationDeliveryError, StoreUnavailableError
from flagengine.core.flags.definition import FlagDefinition, FlagSnapshot
from flagengine.core.flags.store import FlagStore
from flagengine.core.message_bus import InvalidationBus
from flagengine.utils.metrics import (
    flag_cache_requests_total,
    flag_invalidations_total,
    flag_store_errors_total,
    flag_store_load_seconds,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCAL_TTL = 10.0
DEFAULT_SHARED_TTL = 60.0

_STORE_FAILURES = (StoreUnavailableError, asyncio.TimeoutError, ConnectionError, OSError)


class FlagCache:
    """Cache layer in front of a FlagStore.

    One instance per process, created at startup and stopped at shutdown.
    Concurrent misses on the same cold key may each load from the store;
    loads are idempotent so no deduplication is done.
    """

    def __init__(
        self,
        store: FlagStore,
        local: Optional[InMemoryCache] = None,
        shared: Optional[CacheBackend] = None,
        bus: Optional[InvalidationBus] = None,
        local_ttl: float = DEFAULT_LOCAL_TTL,
        shared_ttl: float = DEFAULT_SHARED_TTL,
        store_timeout: Optional[float] = None,
        purge_shared_on_event: bool = True,
    ):
        self._store = store
        self._local = local or InMemoryCache(
            max_size=10000,
            default_ttl=local_ttl,
            retain_expired=True,
            tier=CacheTier.LOCAL,
        )
        self._shared = shared
        self._bus = bus
        self._local_ttl = local_ttl
        self._shared_ttl = shared_ttl
        self._store_timeout = store_timeout
        self._purge_shared_on_event = purge_shared_on_event

        self._known_defaults: Dict[str, Any] = {}
        # Bumped on every purge; a load that straddles a purge is not cached
        self._generations: Dict[str, int] = {}
        self._subscription_id: Optional[str] = None

    @property
    def store(self) -> FlagStore:
        return self._store

    @property
    def running(self) -> bool:
        return self._subscription_id is not None

    async def start(self) -> None:
        """Subscribe to invalidation events."""
        if self._bus is None or self._subscription_id is not None:
            return
        self._subscription_id = await self._bus.subscribe(self._on_invalidation)

    async def stop(self) -> None:
        if self._bus is not None and self._subscription_id is not None:
            await self._bus.unsubscribe(self._subscription_id)
        self._subscription_id = None

    async def get_snapshot(self, flag_key: str) -> FlagSnapshot:
        """Snapshot for ``flag_key`` via L1, then L2, then the store.

        Raises:
            StoreUnavailableError: if the store cannot be reached and no
                cached copy exists, not even a stale one.
        """
        snapshot = await self._local.get(flag_key)
        if snapshot is not None:
            flag_cache_requests_total.labels(tier="local", result="hit").inc()
            return snapshot
        flag_cache_requests_total.labels(tier="local", result="miss").inc()

        if self._shared is not None:
            generation = self._generations.get(flag_key, 0)
            snapshot = await self._get_shared(flag_key)
            if snapshot is not None and self._generations.get(flag_key, 0) != generation:
                # Purged while reading L2; the copy may predate the change
                logger.debug(f"Invalidated during shared read, reloading {flag_key}")
                snapshot = None
            elif snapshot is not None:
                flag_cache_requests_total.labels(tier="shared", result="hit").inc()
                self._remember(snapshot)
                await self._local.set(flag_key, snapshot, ttl=self._local_ttl)
                return snapshot
            flag_cache_requests_total.labels(tier="shared", result="miss").inc()

        return await self._load(flag_key)

    async def get_flag(self, flag_key: str) -> Optional[FlagDefinition]:
        snapshot = await self.get_snapshot(flag_key)
        return snapshot.definition

    async def _get_shared(self, flag_key: str) -> Optional[FlagSnapshot]:
        raw = await self._shared.get(flag_key)
        if raw is None:
            return None
        try:
            return FlagSnapshot.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed shared cache entry for {flag_key}: {e}")
            return None

    async def _load(self, flag_key: str) -> FlagSnapshot:
        generation = self._generations.get(flag_key, 0)
        started = time.perf_counter()
        try:
            if self._store_timeout is not None:
                snapshot = await asyncio.wait_for(
                    self._store.get_snapshot(flag_key), timeout=self._store_timeout
                )
            else:
                snapshot = await self._store.get_snapshot(flag_key)
        except _STORE_FAILURES as e:
            flag_store_errors_total.labels(operation="get_snapshot").inc()
            stale = await self._local.get_entry(flag_key)
            if stale is not None:
                flag_cache_requests_total.labels(tier="local", result="stale").inc()
                logger.warning(f"Flag store unavailable, serving stale copy of {flag_key}: {e!r}")
                return stale.value
            flag_cache_requests_total.labels(tier="store", result="error").inc()
            raise StoreUnavailableError(
                f"Flag store unavailable loading '{flag_key}': {e!r}"
            ) from e

        flag_store_load_seconds.observe(time.perf_counter() - started)
        flag_cache_requests_total.labels(tier="store", result="hit").inc()
        self._remember(snapshot)

        if self._generations.get(flag_key, 0) != generation:
            logger.debug(f"Invalidated during load, not caching {flag_key}")
            return snapshot

        if self._shared is not None:
            await self._shared.set(flag_key, snapshot.to_dict(), ttl=self._shared_ttl)
        await self._local.set(flag_key, snapshot, ttl=self._local_ttl)
        return snapshot

    def _remember(self, snapshot: FlagSnapshot) -> None:
        if snapshot.definition is not None:
            self._known_defaults[snapshot.flag_key] = snapshot.definition.default_value

    def last_known_default(self, flag_key: str) -> Any:
        """Default value last seen for ``flag_key``; False if never seen."""
        return self._known_defaults.get(flag_key, False)

    async def purge(self, flag_key: str, include_shared: bool = True) -> None:
        """Drop ``flag_key`` from this instance's cache tiers without broadcasting."""
        self._generations[flag_key] = self._generations.get(flag_key, 0) + 1
        await self._local.delete(flag_key)
        if include_shared and self._shared is not None:
            await self._shared.delete(flag_key)

    async def invalidate(self, flag_key: str) -> None:
        """Purge ``flag_key`` here and tell every other instance to do the same.

        Publishing is best-effort: a failed send is logged and counted, and
        TTL expiry bounds staleness elsewhere.
        """
        await self.purge(flag_key)
        if self._bus is None:
            return
        try:
            await self._bus.publish(flag_key)
        except InvalidationDeliveryError as e:
            flag_invalidations_total.labels(direction="published", status="failed").inc()
            logger.warning(f"Invalidation of {flag_key} not delivered: {e}")
            return
        flag_invalidations_total.labels(direction="published", status="ok").inc()

    async def _on_invalidation(self, flag_key: str) -> None:
        flag_invalidations_total.labels(direction="received", status="ok").inc()
        await self.purge(flag_key, include_shared=self._purge_shared_on_event)

    async def clear(self) -> None:
        await self._local.clear()
        if self._shared is not None:
            await self._shared.clear()

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        stats = {"local": self._local.get_stats().to_dict()}
        if self._shared is not None:
            stats["shared"] = self._shared.get_stats().to_dict()
        return stats
