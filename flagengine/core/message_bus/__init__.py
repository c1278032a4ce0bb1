"""Message Bus Module.

Cross-instance cache invalidation:
- Publish/subscribe of invalidated flag keys
- In-memory channel for single-process use and tests
- Redis pub/sub transport for multi-instance deployments

Delivery is at-most-once and best-effort. Messages carry only the flag
key; receivers reload from the store rather than trusting a payload.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

from redis.exceptions import RedisError

from flagengine.core.errors import InvalidationDeliveryError

logger = logging.getLogger(__name__)

InvalidationHandler = Callable[[str], Union[Awaitable[None], None]]


@dataclass
class Subscription:
    """A registered invalidation handler."""

    handler: InvalidationHandler
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)


class InvalidationBus(ABC):
    """Abstract invalidation channel."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}

    @abstractmethod
    async def publish(self, flag_key: str) -> None:
        """Announce that ``flag_key`` changed.

        Raises:
            InvalidationDeliveryError: if the transport rejected the send.
        """
        pass

    @abstractmethod
    async def subscribe(self, handler: InvalidationHandler) -> str:
        """Register a handler. Returns the subscription ID."""
        pass

    async def unsubscribe(self, subscription_id: str) -> bool:
        sub = self._subscriptions.pop(subscription_id, None)
        if sub is None:
            return False
        logger.info(f"Unsubscribed {subscription_id}")
        return True

    @abstractmethod
    async def close(self) -> None:
        pass

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def _deliver(self, flag_key: str) -> None:
        """Run every handler; one failing handler does not affect the others."""
        for sub in list(self._subscriptions.values()):
            try:
                result = sub.handler(flag_key)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Invalidation handler {sub.id} failed for {flag_key}: {e}")


class InMemoryInvalidationBus(InvalidationBus):
    """Invalidation channel shared by instances within one process.

    Each engine instance subscribes its own handler, so a single bus object
    stands in for the network between instances.
    """

    def __init__(self, history_size: int = 100) -> None:
        super().__init__()
        self._closed = False
        self._published: Deque[str] = deque(maxlen=history_size)

    async def publish(self, flag_key: str) -> None:
        if self._closed:
            raise InvalidationDeliveryError(f"Bus closed; dropped invalidation of {flag_key}")
        self._published.append(flag_key)
        if not self._subscriptions:
            logger.debug(f"No subscribers for invalidation of {flag_key}")
            return
        await self._deliver(flag_key)

    async def subscribe(self, handler: InvalidationHandler) -> str:
        if self._closed:
            raise InvalidationDeliveryError("Cannot subscribe to a closed bus")
        sub = Subscription(handler=handler)
        self._subscriptions[sub.id] = sub
        logger.info(f"Subscribed {sub.id} to in-memory invalidations")
        return sub.id

    async def close(self) -> None:
        self._closed = True
        self._subscriptions.clear()

    @property
    def published(self) -> List[str]:
        """Most recently published keys, oldest first."""
        return list(self._published)


class RedisInvalidationBus(InvalidationBus):
    """Invalidation over Redis pub/sub.

    The first subscription opens a pubsub connection and starts a listener
    task that dispatches received keys to local handlers.
    """

    def __init__(
        self,
        redis_client: Any,
        channel: str = "flags:invalidate",
        poll_timeout: float = 1.0,
        retry_delay: float = 1.0,
    ):
        super().__init__()
        self._redis = redis_client
        self._channel = channel
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._pubsub: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def channel(self) -> str:
        return self._channel

    async def publish(self, flag_key: str) -> None:
        try:
            receivers = await self._redis.publish(self._channel, flag_key)
        except RedisError as e:
            raise InvalidationDeliveryError(
                f"Redis publish of {flag_key} to {self._channel} failed: {e}"
            ) from e
        logger.debug(f"Published invalidation of {flag_key} to {receivers} receiver(s)")

    async def subscribe(self, handler: InvalidationHandler) -> str:
        if self._task is None:
            self._pubsub = self._redis.pubsub()
            await self._pubsub.subscribe(self._channel)
            self._task = asyncio.create_task(self._listen())
            logger.info(f"Listening for invalidations on {self._channel}")

        sub = Subscription(handler=handler)
        self._subscriptions[sub.id] = sub
        return sub.id

    async def _listen(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=self._poll_timeout,
                )
            except RedisError as e:
                logger.warning(f"Invalidation listener error on {self._channel}: {e}")
                await asyncio.sleep(self._retry_delay)
                continue

            if not message or message.get("type") != "message":
                continue

            data = message.get("data")
            if isinstance(data, bytes):
                try:
                    data = data.decode("utf-8")
                except UnicodeDecodeError:
                    logger.warning(f"Dropping undecodable invalidation on {self._channel}: {data!r}")
                    continue
            await self._deliver(str(data))

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self._channel)
                await self._pubsub.aclose()
            except RedisError as e:
                logger.warning(f"Error closing invalidation pubsub: {e}")
            self._pubsub = None

        self._subscriptions.clear()


__all__ = [
    "InvalidationHandler",
    "Subscription",
    "InvalidationBus",
    "InMemoryInvalidationBus",
    "RedisInvalidationBus",
]
