"""Tests for the cluster relay buses (Redis mocked, in-memory real)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.rtms_relay.broadcast.bus import (
    InMemoryClusterBus,
    InMemoryHub,
    RedisClusterBus,
    RelayEnvelope,
)

CHANNEL = "rtms-transcripts"


def _envelope(origin: str = "a") -> RelayEnvelope:
    return RelayEnvelope(origin=origin, payload={"msg_type": 17, "content": {"data": "hi"}})


def _mock_redis(messages: list[dict]):
    """Redis client whose pubsub yields ``messages`` then blocks."""

    async def listen():
        for message in messages:
            yield message
        await asyncio.Event().wait()

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.aclose = AsyncMock()
    pubsub.listen = listen

    redis = MagicMock()
    redis.pubsub = MagicMock(return_value=pubsub)
    redis.publish = AsyncMock(return_value=1)
    return redis, pubsub


class TestRedisClusterBus:
    """RedisClusterBus publishes JSON envelopes and dispatches valid ones."""

    @pytest.mark.asyncio
    async def test_publish_serializes_envelope(self):
        redis, _ = _mock_redis([])
        bus = RedisClusterBus(redis, channel=CHANNEL)

        await bus.publish(_envelope())

        channel, data = redis.publish.await_args.args
        assert channel == CHANNEL
        assert RelayEnvelope.model_validate_json(data) == _envelope()

    @pytest.mark.asyncio
    async def test_listener_delivers_and_skips_invalid(self, wait_until):
        redis, pubsub = _mock_redis(
            [
                {"type": "subscribe", "data": 1},
                {"type": "message", "data": "not json"},
                {"type": "message", "data": '{"payload": {}}'},
                {"type": "message", "data": _envelope("b").model_dump_json()},
            ]
        )
        handler = AsyncMock()
        bus = RedisClusterBus(redis, channel=CHANNEL)

        await bus.start(handler)
        await wait_until(lambda: handler.await_count == 1)
        await bus.close()

        pubsub.subscribe.assert_awaited_once_with(CHANNEL)
        handler.assert_awaited_once_with(_envelope("b"))
        pubsub.unsubscribe.assert_awaited_once_with(CHANNEL)
        pubsub.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handler_error_does_not_stop_listener(self, wait_until):
        redis, _ = _mock_redis(
            [
                {"type": "message", "data": _envelope("b").model_dump_json()},
                {"type": "message", "data": _envelope("c").model_dump_json()},
            ]
        )
        handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
        bus = RedisClusterBus(redis, channel=CHANNEL)

        await bus.start(handler)
        await wait_until(lambda: handler.await_count == 2)
        await bus.close()


class TestInMemoryClusterBus:
    @pytest.mark.asyncio
    async def test_hub_delivers_to_every_attached_bus(self):
        hub = InMemoryHub()
        first, second = InMemoryClusterBus(hub), InMemoryClusterBus(hub)
        first_handler, second_handler = AsyncMock(), AsyncMock()
        await first.start(first_handler)
        await second.start(second_handler)

        await first.publish(_envelope())

        first_handler.assert_awaited_once_with(_envelope())
        second_handler.assert_awaited_once_with(_envelope())

    @pytest.mark.asyncio
    async def test_closed_bus_stops_receiving(self):
        hub = InMemoryHub()
        first, second = InMemoryClusterBus(hub), InMemoryClusterBus(hub)
        handler = AsyncMock()
        await first.start(AsyncMock())
        await second.start(handler)

        await second.close()
        await first.publish(_envelope())

        handler.assert_not_awaited()
