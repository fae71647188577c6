"""Cross-instance relay bus.

Every running instance publishes the transcripts it receives so that
subscribers connected to any other instance see them too. Envelopes carry
the origin instance id; receivers drop their own echoes and never
re-publish what they receive, so a message crosses the bus exactly once.

Two backends:
- RedisClusterBus: Redis pub/sub on a single channel (production)
- InMemoryClusterBus: buses sharing an InMemoryHub within one process
  (single-instance deployments and tests)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field, ValidationError

from src.rtms_relay.core.monitoring import relay_messages_total

logger = structlog.get_logger(__name__)

ENVELOPE_KIND_TRANSCRIPT = "transcript"


class RelayEnvelope(BaseModel):
    """Origin-tagged message exchanged between instances.

    Attributes:
        origin: Instance id of the publisher.
        kind: Event kind; only ``"transcript"`` is produced today.
        payload: Serialized event as delivered to subscribers.
    """

    origin: str
    kind: str = ENVELOPE_KIND_TRANSCRIPT
    payload: dict[str, Any] = Field(default_factory=dict)


RelayHandler = Callable[[RelayEnvelope], Awaitable[None]]


class ClusterBus(ABC):
    """Publish/subscribe interface for origin-tagged relay envelopes."""

    @abstractmethod
    async def start(self, handler: RelayHandler) -> None:
        """Begin delivering envelopes from other publishers to ``handler``."""
        ...

    @abstractmethod
    async def publish(self, envelope: RelayEnvelope) -> None:
        """Send an envelope to every instance on the bus."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop delivery and release resources."""
        ...


# ── Redis backend ───────────────────────────────────────────────────────────


class RedisClusterBus(ClusterBus):
    """Relay bus over a Redis pub/sub channel.

    A background listener task reads the channel and hands each decoded
    envelope to the handler. Bad messages and handler errors are logged
    and skipped; the listener only stops on ``close()``.

    Args:
        redis: Async Redis client (decode_responses=True).
        channel: Pub/sub channel name shared by all instances.
    """

    def __init__(self, redis: aioredis.Redis, channel: str) -> None:
        self._redis = redis
        self._channel = channel
        self._pubsub: Any = None
        self._listener: asyncio.Task | None = None
        self._handler: RelayHandler | None = None

    async def start(self, handler: RelayHandler) -> None:
        self._handler = handler
        self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        await self._pubsub.subscribe(self._channel)
        self._listener = asyncio.create_task(
            self._listen(), name=f"relay_listener_{self._channel}"
        )
        logger.info("relay.bus_started", backend="redis", channel=self._channel)

    async def publish(self, envelope: RelayEnvelope) -> None:
        await self._redis.publish(self._channel, envelope.model_dump_json())

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self._dispatch(message.get("data"))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("relay.listener_stopped", channel=self._channel, exc_info=True)

    async def _dispatch(self, data: Any) -> None:
        try:
            envelope = RelayEnvelope.model_validate_json(data)
        except (ValidationError, TypeError, ValueError):
            relay_messages_total.labels(direction="error").inc()
            logger.warning("relay.envelope_invalid", channel=self._channel)
            return

        if self._handler is None:
            return
        try:
            await self._handler(envelope)
        except Exception:
            relay_messages_total.labels(direction="error").inc()
            logger.warning(
                "relay.handler_error",
                channel=self._channel,
                origin=envelope.origin,
                exc_info=True,
            )

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None
        logger.info("relay.bus_closed", backend="redis", channel=self._channel)


# ── In-memory backend ───────────────────────────────────────────────────────


class InMemoryHub:
    """Shared medium for InMemoryClusterBus instances in one process."""

    def __init__(self) -> None:
        self._buses: list[InMemoryClusterBus] = []

    def attach(self, bus: InMemoryClusterBus) -> None:
        if bus not in self._buses:
            self._buses.append(bus)

    def detach(self, bus: InMemoryClusterBus) -> None:
        if bus in self._buses:
            self._buses.remove(bus)

    async def deliver(self, envelope: RelayEnvelope) -> None:
        # Like Redis pub/sub, the publisher receives its own message too.
        for bus in list(self._buses):
            await bus._receive(envelope)


class InMemoryClusterBus(ClusterBus):
    """Relay bus whose peers are other buses on the same InMemoryHub.

    Args:
        hub: Shared hub; a private one is created when omitted.
    """

    def __init__(self, hub: InMemoryHub | None = None) -> None:
        self._hub = hub or InMemoryHub()
        self._handler: RelayHandler | None = None

    async def start(self, handler: RelayHandler) -> None:
        self._handler = handler
        self._hub.attach(self)
        logger.info("relay.bus_started", backend="memory")

    async def publish(self, envelope: RelayEnvelope) -> None:
        await self._hub.deliver(envelope)

    async def _receive(self, envelope: RelayEnvelope) -> None:
        if self._handler is None:
            return
        try:
            await self._handler(envelope)
        except Exception:
            relay_messages_total.labels(direction="error").inc()
            logger.warning("relay.handler_error", origin=envelope.origin, exc_info=True)

    async def close(self) -> None:
        self._hub.detach(self)
        self._handler = None
