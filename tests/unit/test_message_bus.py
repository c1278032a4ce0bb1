"""Tests for flagengine/core/message_bus.

Covers:
- InMemoryInvalidationBus: fan-out, handler isolation, closed bus
- RedisInvalidationBus: publish, listener dispatch, error recovery,
  undecodable payloads, close
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from flagengine.core.errors import InvalidationDeliveryError
from flagengine.core.message_bus import InMemoryInvalidationBus, RedisInvalidationBus


async def _idle(**kwargs):
    await asyncio.sleep(0.01)
    return None


class TestInMemoryInvalidationBus:
    """Tests for InMemoryInvalidationBus."""

    @pytest.mark.asyncio
    async def test_delivers_to_every_subscriber(self):
        bus = InMemoryInvalidationBus()
        seen_a, seen_b = [], []

        async def handler_a(key):
            seen_a.append(key)

        await bus.subscribe(handler_a)
        await bus.subscribe(seen_b.append)
        await bus.publish("checkout.new_flow")

        assert seen_a == ["checkout.new_flow"]
        assert seen_b == ["checkout.new_flow"]
        assert bus.published == ["checkout.new_flow"]
        assert bus.subscription_count == 2

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        bus = InMemoryInvalidationBus()
        seen = []

        def broken(key):
            raise RuntimeError("boom")

        await bus.subscribe(broken)
        await bus.subscribe(seen.append)
        await bus.publish("a.flag")

        assert seen == ["a.flag"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = InMemoryInvalidationBus()
        seen = []
        sub_id = await bus.subscribe(seen.append)

        assert await bus.unsubscribe(sub_id) is True
        assert await bus.unsubscribe(sub_id) is False
        await bus.publish("a.flag")
        assert seen == []

    @pytest.mark.asyncio
    async def test_publish_history_is_bounded(self):
        bus = InMemoryInvalidationBus(history_size=3)
        for i in range(1000):
            await bus.publish(f"flag.{i}")
        assert bus.published == ["flag.997", "flag.998", "flag.999"]

    @pytest.mark.asyncio
    async def test_publish_after_close_fails(self):
        bus = InMemoryInvalidationBus()
        await bus.close()
        with pytest.raises(InvalidationDeliveryError):
            await bus.publish("a.flag")
        with pytest.raises(InvalidationDeliveryError):
            await bus.subscribe(lambda key: None)


class TestRedisInvalidationBus:
    """Tests for RedisInvalidationBus with a mocked client."""

    @pytest.fixture
    def pubsub(self):
        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = AsyncMock(side_effect=_idle)
        return pubsub

    @pytest.fixture
    def redis(self, pubsub):
        client = MagicMock()
        client.publish = AsyncMock(return_value=2)
        client.pubsub = MagicMock(return_value=pubsub)
        return client

    @staticmethod
    def feed(pubsub, *items):
        """Make get_message return ``items`` in order, then idle."""
        queue = list(items)

        async def get_message(**kwargs):
            if queue:
                item = queue.pop(0)
                if isinstance(item, Exception):
                    raise item
                return item
            await asyncio.sleep(0.01)
            return None

        pubsub.get_message = AsyncMock(side_effect=get_message)

    @pytest.mark.asyncio
    async def test_publish(self, redis):
        bus = RedisInvalidationBus(redis, channel="flags:invalidate")
        await bus.publish("a.flag")
        redis.publish.assert_awaited_once_with("flags:invalidate", "a.flag")

    @pytest.mark.asyncio
    async def test_publish_failure_raises_delivery_error(self, redis):
        redis.publish.side_effect = RedisConnectionError("down")
        bus = RedisInvalidationBus(redis)
        with pytest.raises(InvalidationDeliveryError):
            await bus.publish("a.flag")

    @pytest.mark.asyncio
    async def test_listener_dispatches_keys(self, redis, pubsub):
        self.feed(
            pubsub,
            {"type": "message", "data": b"checkout.new_flow"},
            {"type": "pmessage", "data": b"ignored.flag"},
        )
        received = asyncio.Event()
        seen = []

        async def handler(key):
            seen.append(key)
            received.set()

        bus = RedisInvalidationBus(redis, channel="flags:invalidate", poll_timeout=0.01)
        await bus.subscribe(handler)
        await asyncio.wait_for(received.wait(), timeout=1.0)
        await bus.close()

        pubsub.subscribe.assert_awaited_once_with("flags:invalidate")
        assert seen == ["checkout.new_flow"]

    @pytest.mark.asyncio
    async def test_listener_survives_redis_errors(self, redis, pubsub):
        self.feed(
            pubsub,
            RedisConnectionError("blip"),
            {"type": "message", "data": "a.flag"},
        )
        received = asyncio.Event()

        bus = RedisInvalidationBus(redis, poll_timeout=0.01, retry_delay=0.01)
        await bus.subscribe(lambda key: received.set())
        await asyncio.wait_for(received.wait(), timeout=1.0)
        await bus.close()

    @pytest.mark.asyncio
    async def test_listener_skips_undecodable_payload(self, redis, pubsub):
        self.feed(
            pubsub,
            {"type": "message", "data": b"\xff\xfe"},
            {"type": "message", "data": b"good.flag"},
        )
        received = asyncio.Event()
        seen = []

        async def handler(key):
            seen.append(key)
            received.set()

        bus = RedisInvalidationBus(redis, poll_timeout=0.01)
        await bus.subscribe(handler)
        await asyncio.wait_for(received.wait(), timeout=1.0)
        assert not bus._task.done()
        await bus.close()

        assert seen == ["good.flag"]

    @pytest.mark.asyncio
    async def test_single_listener_for_many_subscribers(self, redis, pubsub):
        bus = RedisInvalidationBus(redis, poll_timeout=0.01)
        await bus.subscribe(lambda key: None)
        await bus.subscribe(lambda key: None)
        assert redis.pubsub.call_count == 1
        assert bus.subscription_count == 2
        await bus.close()

    @pytest.mark.asyncio
    async def test_close(self, redis, pubsub):
        bus = RedisInvalidationBus(redis, channel="flags:invalidate", poll_timeout=0.01)
        await bus.subscribe(lambda key: None)
        await bus.close()

        pubsub.unsubscribe.assert_awaited_once_with("flags:invalidate")
        pubsub.aclose.assert_awaited_once()
        assert bus.subscription_count == 0
