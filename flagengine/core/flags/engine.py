"""Per-process wiring of store, caches, bus, evaluator and mutation service."""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis.asyncio as redis

from flagengine.core.audit import AuditRecorder
from flagengine.core.caching import CacheBackend, CacheTier, InMemoryCache, RedisCache
from flagengine.core.config import Settings, get_settings
from flagengine.core.flags.cache import FlagCache
from flagengine.core.flags.definition import EvaluationContext, EvaluationResult, FlagDefinition
from flagengine.core.flags.evaluator import Evaluator
from flagengine.core.flags.service import FlagService
from flagengine.core.flags.store import FlagStore
from flagengine.core.logging.structured import configure_logging as configure_log_output
from flagengine.core.message_bus import (
    InMemoryInvalidationBus,
    InvalidationBus,
    RedisInvalidationBus,
)

logger = logging.getLogger(__name__)


class FlagEngine:
    """One engine instance per process.

    Owns the cache and its bus subscription; ``start`` must run before
    other instances' invalidations are seen here.
    """

    def __init__(
        self,
        store: FlagStore,
        cache: FlagCache,
        bus: Optional[InvalidationBus] = None,
        recorder: Optional[AuditRecorder] = None,
        redis_client: Optional[Any] = None,
        owns_bus: bool = False,
    ):
        self.store = store
        self.cache = cache
        self.bus = bus
        self.recorder = recorder or AuditRecorder(store)
        self.evaluator = Evaluator(cache)
        self.service = FlagService(store, cache, self.recorder)
        self._redis = redis_client
        self._owns_bus = owns_bus
        self._started = False

    @classmethod
    def from_settings(
        cls,
        store: FlagStore,
        settings: Optional[Settings] = None,
        redis_client: Optional[Any] = None,
        bus: Optional[InvalidationBus] = None,
        configure_logging: bool = False,
    ) -> "FlagEngine":
        """Build an engine from settings.

        With ``REDIS_ENABLED`` the shared tier and the invalidation bus run
        on Redis; a client is created from ``REDIS_URL`` unless one is
        passed in. Otherwise there is no shared tier and ``bus`` (or a
        fresh in-memory bus) carries invalidations.
        """
        settings = settings or get_settings()
        if configure_logging:
            configure_log_output(
                service_name=settings.SERVICE_NAME,
                environment=settings.ENVIRONMENT,
                level=logging.getLevelName(settings.LOG_LEVEL.upper()),
                json_output=settings.LOG_JSON,
            )

        owned_client = None
        owns_bus = bus is None
        shared: Optional[CacheBackend] = None
        if settings.REDIS_ENABLED:
            if redis_client is None:
                redis_client = owned_client = redis.from_url(settings.REDIS_URL)
            shared = RedisCache(
                redis_client,
                key_prefix=settings.FLAG_CACHE_KEY_PREFIX,
                default_ttl=settings.FLAG_L2_TTL_SECONDS,
            )
            if bus is None:
                bus = RedisInvalidationBus(
                    redis_client, channel=settings.FLAG_INVALIDATION_CHANNEL
                )
        elif bus is None:
            bus = InMemoryInvalidationBus()

        local = InMemoryCache(
            max_size=settings.FLAG_L1_MAX_SIZE,
            default_ttl=settings.FLAG_L1_TTL_SECONDS,
            retain_expired=True,
            tier=CacheTier.LOCAL,
        )
        cache = FlagCache(
            store,
            local=local,
            shared=shared,
            bus=bus,
            local_ttl=settings.FLAG_L1_TTL_SECONDS,
            shared_ttl=settings.FLAG_L2_TTL_SECONDS,
            store_timeout=settings.FLAG_STORE_TIMEOUT_SECONDS,
        )
        logger.info(
            f"Flag engine configured (shared tier: {'redis' if shared else 'none'}, "
            f"bus: {type(bus).__name__})"
        )
        return cls(store, cache, bus=bus, redis_client=owned_client, owns_bus=owns_bus)

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self.cache.start()
        self._started = True

    async def stop(self) -> None:
        """Unsubscribe, and close the bus and Redis client if this engine made them.

        Owned resources are released even if ``start`` never ran.
        """
        if self._started:
            await self.cache.stop()
            self._started = False
        if self._owns_bus and self.bus is not None:
            await self.bus.close()
            self._owns_bus = False
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def __aenter__(self) -> "FlagEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def evaluate(self, flag_key: str, context: EvaluationContext) -> EvaluationResult:
        return await self.evaluator.evaluate(flag_key, context)

    async def is_enabled(self, flag_key: str, context: EvaluationContext) -> bool:
        return await self.evaluator.is_enabled(flag_key, context)

    async def invalidate(self, flag_key: str) -> None:
        await self.cache.invalidate(flag_key)

    async def emergency_disable(
        self,
        flag_key: str,
        actor: str,
        reason: str = "Emergency kill switch",
    ) -> FlagDefinition:
        return await self.service.emergency_disable(flag_key, actor, reason=reason)
