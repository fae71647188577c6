"""Transcript distribution: recency buffer, local fan-out, cross-instance relay.

TranscriptBroadcaster is the single owner of the recent-transcript buffer
and of the set of live local subscribers. MediaChannel hands it every
decoded TranscriptEvent; it stores the event, delivers it to local sinks
and relays it to the other instances. Envelopes arriving from other
instances are delivered to local sinks only, which is what keeps the relay
from looping.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections import deque

import structlog

from src.rtms_relay.broadcast.bus import ClusterBus, RelayEnvelope, ENVELOPE_KIND_TRANSCRIPT
from src.rtms_relay.broadcast.subscribers import QueueSubscriber, TranscriptSink
from src.rtms_relay.core.monitoring import (
    relay_messages_total,
    transcript_delivery_failures_total,
    transcript_subscribers,
    transcripts_published_total,
)
from src.rtms_relay.rtms.schemas import PollResult, TranscriptEvent

logger = structlog.get_logger(__name__)

DEFAULT_RECENT_LIMIT = 50
DEFAULT_RELAY_QUEUE_SIZE = 1024
DEFAULT_RELAY_TIMEOUT = 5.0


def _now_ms() -> int:
    return int(time.time() * 1000)


class TranscriptBroadcaster:
    """Stores and fans out transcript events for one service instance.

    Args:
        instance_id: Identity stamped on relayed envelopes; envelopes
            carrying it are recognised as echoes and ignored.
        bus: Cross-instance relay bus. None disables relaying.
        recent_limit: Capacity of the recency buffer.
        subscriber_queue_size: Queue bound for subscribers created by
            ``subscribe()``.
        relay_queue_size: Envelopes waiting for the bus before new ones
            are dropped.
        relay_timeout: Seconds a single bus publish may take.

    Relaying runs on a background worker in publish order, so a slow bus
    never delays the media channel that produced the event.
    """

    def __init__(
        self,
        instance_id: str,
        bus: ClusterBus | None = None,
        recent_limit: int = DEFAULT_RECENT_LIMIT,
        subscriber_queue_size: int = 256,
        relay_queue_size: int = DEFAULT_RELAY_QUEUE_SIZE,
        relay_timeout: float = DEFAULT_RELAY_TIMEOUT,
    ) -> None:
        self._instance_id = instance_id
        self._bus = bus
        self._recent: deque[TranscriptEvent] = deque(maxlen=recent_limit)
        self._subscribers: set[TranscriptSink] = set()
        self._subscriber_queue_size = subscriber_queue_size
        self._last_poll_ms = _now_ms()
        self._relay_queue: asyncio.Queue[RelayEnvelope] = asyncio.Queue(maxsize=relay_queue_size)
        self._relay_timeout = relay_timeout
        self._relay_worker: asyncio.Task | None = None

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start receiving relayed envelopes from the bus."""
        if self._bus is not None:
            await self._bus.start(self.on_relay)

    async def close(self) -> None:
        """Stop relaying and close every local subscriber.

        Envelopes still queued for the bus are discarded.
        """
        if self._relay_worker is not None:
            self._relay_worker.cancel()
            try:
                await self._relay_worker
            except asyncio.CancelledError:
                pass
            self._relay_worker = None
        if self._bus is not None:
            await self._bus.close()
        for sink in list(self._subscribers):
            self.unsubscribe(sink)

    # ── Subscribers ─────────────────────────────────────────────────────

    def subscribe(self, sink: TranscriptSink | None = None) -> TranscriptSink:
        """Register a live sink; recent events are not replayed to it.

        Args:
            sink: Existing sink to register. A QueueSubscriber is created
                when omitted.

        Returns:
            The registered sink, to pass to ``unsubscribe`` later.
        """
        if sink is None:
            sink = QueueSubscriber(maxsize=self._subscriber_queue_size)
        self._subscribers.add(sink)
        transcript_subscribers.set(len(self._subscribers))
        logger.info(
            "broadcast.subscriber_added",
            subscriber_id=getattr(sink, "subscriber_id", None),
            total=len(self._subscribers),
        )
        return sink

    def unsubscribe(self, sink: TranscriptSink) -> None:
        """Remove a sink. Unknown sinks are ignored."""
        if sink not in self._subscribers:
            return
        self._subscribers.discard(sink)
        transcript_subscribers.set(len(self._subscribers))
        close = getattr(sink, "close", None)
        if callable(close):
            close()
        logger.info(
            "broadcast.subscriber_removed",
            subscriber_id=getattr(sink, "subscriber_id", None),
            remaining=len(self._subscribers),
        )

    # ── Publish / relay ─────────────────────────────────────────────────

    async def publish(self, event: TranscriptEvent) -> int:
        """Store, fan out locally and relay one transcript event.

        Args:
            event: Decoded transcript event.

        Returns:
            Number of local subscribers the event was delivered to.
        """
        self._recent.appendleft(event)
        transcripts_published_total.inc()

        payload = event.to_payload()
        delivered = await self._deliver_local(json.dumps(payload))

        logger.debug(
            "broadcast.published",
            speaker_name=event.speaker_name,
            delivered=delivered,
            stored=len(self._recent),
        )

        if self._bus is not None:
            self._enqueue_relay(
                RelayEnvelope(
                    origin=self._instance_id,
                    kind=ENVELOPE_KIND_TRANSCRIPT,
                    payload=payload,
                )
            )

        return delivered

    def _enqueue_relay(self, envelope: RelayEnvelope) -> None:
        if self._relay_worker is None or self._relay_worker.done():
            self._relay_worker = asyncio.create_task(
                self._relay_loop(), name=f"relay_publisher_{self._instance_id[:8]}"
            )
        try:
            self._relay_queue.put_nowait(envelope)
        except asyncio.QueueFull:
            relay_messages_total.labels(direction="dropped").inc()
            logger.warning(
                "broadcast.relay_queue_full",
                queued=self._relay_queue.qsize(),
            )

    async def _relay_loop(self) -> None:
        while True:
            envelope = await self._relay_queue.get()
            try:
                await asyncio.wait_for(self._bus.publish(envelope), timeout=self._relay_timeout)
                relay_messages_total.labels(direction="sent").inc()
            except Exception:
                relay_messages_total.labels(direction="error").inc()
                logger.warning("broadcast.relay_publish_failed", exc_info=True)
            finally:
                self._relay_queue.task_done()

    async def flush_relay(self) -> None:
        """Wait until every queued envelope has been handed to the bus."""
        await self._relay_queue.join()

    async def on_relay(self, envelope: RelayEnvelope) -> int:
        """Handle an envelope delivered by the bus.

        Our own envelopes are ignored. Others go to local subscribers
        only; they are never published back to the bus.

        Returns:
            Number of local subscribers the payload was delivered to.
        """
        if envelope.origin == self._instance_id:
            relay_messages_total.labels(direction="echo").inc()
            return 0
        if envelope.kind != ENVELOPE_KIND_TRANSCRIPT:
            logger.debug("broadcast.relay_kind_ignored", kind=envelope.kind)
            return 0

        relay_messages_total.labels(direction="received").inc()
        return await self._deliver_local(json.dumps(envelope.payload))

    async def _deliver_local(self, message: str) -> int:
        delivered = 0
        for sink in list(self._subscribers):
            try:
                await sink.send(message)
                delivered += 1
            except Exception as exc:
                transcript_delivery_failures_total.inc()
                logger.warning(
                    "broadcast.delivery_failed",
                    subscriber_id=getattr(sink, "subscriber_id", None),
                    error=str(exc),
                )
                self.unsubscribe(sink)
        return delivered

    # ── Pull-based consumers ────────────────────────────────────────────

    def recent(self, since: int | None = None) -> list[TranscriptEvent]:
        """Snapshot of the recency buffer, newest first.

        Args:
            since: When given, only events with ``timestamp > since``.
        """
        if since is None:
            return list(self._recent)
        return [event for event in self._recent if event.timestamp > since]

    def poll(self, since: int | None = None) -> PollResult:
        """Events newer than ``since`` plus the cursor for the next poll.

        Without ``since`` the cursor of the previous poll on this instance
        is used.
        """
        cursor = since if since is not None else self._last_poll_ms
        transcripts = self.recent(cursor)
        self._last_poll_ms = _now_ms()
        return PollResult(
            transcripts=transcripts,
            timestamp=self._last_poll_ms,
            total_stored=len(self._recent),
        )
