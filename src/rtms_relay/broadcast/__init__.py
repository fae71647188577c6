"""Transcript distribution.

Exports:
    TranscriptBroadcaster: Recency buffer, local fan-out and relay.
    QueueSubscriber: Bounded sink drained by the SSE endpoint.
    RelayEnvelope: Message exchanged between instances.
    RedisClusterBus: Redis pub/sub relay.
    InMemoryClusterBus: In-process relay for tests and single-node runs.
"""

from __future__ import annotations

from src.rtms_relay.broadcast.bus import (
    ClusterBus,
    InMemoryClusterBus,
    InMemoryHub,
    RedisClusterBus,
    RelayEnvelope,
)
from src.rtms_relay.broadcast.subscribers import QueueSubscriber, TranscriptSink

__all__ = [
    "ClusterBus",
    "InMemoryClusterBus",
    "InMemoryHub",
    "QueueSubscriber",
    "RedisClusterBus",
    "RelayEnvelope",
    "TranscriptBroadcaster",
    "TranscriptSink",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the broadcaster, which pulls in the RTMS schemas."""
    if name == "TranscriptBroadcaster":
        from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster

        return TranscriptBroadcaster
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
