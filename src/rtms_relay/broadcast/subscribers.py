"""Subscriber sinks for live transcript delivery.

A sink is anything with an async ``send(message)`` that raises when it
can no longer accept messages. QueueSubscriber is the sink used by the
SSE endpoint: the broadcaster puts serialized events on its queue and the
streaming response drains it.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator
from typing import Protocol

from src.rtms_relay.rtms.errors import SubscriberClosedError


class TranscriptSink(Protocol):
    """Anything the broadcaster can deliver serialized events to."""

    async def send(self, message: str) -> None: ...


class QueueSubscriber:
    """Bounded in-memory sink for one streaming client.

    ``send`` never blocks: a full queue means the client is not keeping
    up, which is treated as a delivery failure so the broadcaster drops
    the subscriber instead of stalling fan-out.

    Args:
        maxsize: Maximum number of undelivered messages.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self.subscriber_id = uuid.uuid4().hex[:8]
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def send(self, message: str) -> None:
        if self._closed:
            raise SubscriberClosedError(f"subscriber {self.subscriber_id} is closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull as exc:
            raise SubscriberClosedError(
                f"subscriber {self.subscriber_id} queue is full"
            ) from exc

    async def get(self) -> str | None:
        """Next message, or None once the subscriber is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        """Stop accepting messages and wake a pending ``get``."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader drains the backlog, then sees the closed flag.
            pass

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            message = await self.get()
            if message is None:
                return
            yield message
