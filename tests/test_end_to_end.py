"""End-to-end RTMS session: webhook start through transcript delivery.

Drives a full session against fake sockets: signaling handshake, media
discovery, data handshake, ready acknowledgment, transcript, teardown.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster
from src.rtms_relay.broadcast.bus import ClusterBus, InMemoryClusterBus, InMemoryHub
from src.rtms_relay.core.security import generate_signature
from src.rtms_relay.rtms.registry import ConnectionRegistry
from src.rtms_relay.rtms.schemas import MessageType

MEETING = "4b1d2c3e-meeting"
STREAM = "stream-42"
SIG_URL = "wss://sig.example/abc"
MEDIA_URL = "wss://media.example/xyz"

TRANSCRIPT_FRAME = {
    "msg_type": 17,
    "content": {"user_id": "u1", "user_name": "Alice", "data": "hello", "timestamp": 1234},
}


class StalledBus(ClusterBus):
    """Relay bus whose publish never returns."""

    async def start(self, handler) -> None:
        return None

    async def publish(self, envelope) -> None:
        await asyncio.sleep(3600)

    async def close(self) -> None:
        return None


async def _run_session(registry, connector, wait_until):
    signaling = await registry.register(MEETING, STREAM, SIG_URL)
    sig_ws = connector.socket(SIG_URL)
    await wait_until(lambda: sig_ws.sent)

    sig_ws.feed(
        {"msg_type": 2, "status_code": 0, "media_server": {"server_urls": {"all": MEDIA_URL}}}
    )
    media_ws = connector.socket(MEDIA_URL)
    await wait_until(lambda: media_ws.sent)

    media_ws.feed({"msg_type": 4, "status_code": 0})
    await wait_until(lambda: sig_ws.sent_of_type(MessageType.CLIENT_READY_ACK))
    return signaling, sig_ws, media_ws


class TestEndToEnd:
    """Session start to transcript in the recency buffer."""

    @pytest.mark.asyncio
    async def test_full_session(self, registry, broadcaster, connector, wait_until):
        subscriber = broadcaster.subscribe()

        _, sig_ws, media_ws = await _run_session(registry, connector, wait_until)

        (handshake,) = sig_ws.sent_of_type(MessageType.SIGNALING_HAND_SHAKE_REQ)
        assert handshake["signature"] == generate_signature(
            "client-abc", MEETING, STREAM, "secret-xyz"
        )
        assert sig_ws.sent_of_type(MessageType.CLIENT_READY_ACK) == [
            {"msg_type": 7, "rtms_stream_id": STREAM}
        ]
        assert media_ws.sent_of_type(MessageType.CLIENT_READY_ACK) == []
        assert connector.urls == [SIG_URL, MEDIA_URL]

        media_ws.feed(TRANSCRIPT_FRAME)
        await wait_until(lambda: broadcaster.recent())

        (event,) = broadcaster.recent()
        assert event.speaker_id == "u1"
        assert event.speaker_name == "Alice"
        assert event.text == "hello"
        assert event.timestamp == 1234
        assert json.loads(await subscriber.get()) == TRANSCRIPT_FRAME

    @pytest.mark.asyncio
    async def test_keep_alives_answered_on_both_sockets(self, registry, connector, wait_until):
        _, sig_ws, media_ws = await _run_session(registry, connector, wait_until)

        sig_ws.feed({"msg_type": 12, "timestamp": 0})
        media_ws.feed({"msg_type": 12, "timestamp": -5})
        await wait_until(
            lambda: sig_ws.sent_of_type(MessageType.KEEP_ALIVE_RESP)
            and media_ws.sent_of_type(MessageType.KEEP_ALIVE_RESP)
        )

        assert sig_ws.sent_of_type(13) == [{"msg_type": 13, "timestamp": 0}]
        assert media_ws.sent_of_type(13) == [{"msg_type": 13, "timestamp": -5}]

    @pytest.mark.asyncio
    async def test_stop_tears_down_and_drops_late_frames(self, registry, broadcaster, connector, wait_until):
        signaling, _, media_ws = await _run_session(registry, connector, wait_until)
        media = registry.get(MEETING).media

        await registry.deregister(MEETING)
        await wait_until(lambda: signaling.task.done() and media.task.done())
        await media.dispatch(json.dumps(TRANSCRIPT_FRAME))

        assert MEETING not in registry
        assert broadcaster.recent() == []

    @pytest.mark.asyncio
    async def test_transcript_reaches_peer_instance(self, signer, connector, wait_until):
        hub = InMemoryHub()
        local = TranscriptBroadcaster(instance_id="local", bus=InMemoryClusterBus(hub))
        peer = TranscriptBroadcaster(instance_id="peer", bus=InMemoryClusterBus(hub))
        await local.start()
        await peer.start()
        peer_subscriber = peer.subscribe()
        registry = ConnectionRegistry(signer=signer, broadcaster=local, connect=connector)

        _, _, media_ws = await _run_session(registry, connector, wait_until)
        media_ws.feed(TRANSCRIPT_FRAME)
        await wait_until(lambda: peer_subscriber.pending == 1)

        assert json.loads(await peer_subscriber.get()) == TRANSCRIPT_FRAME
        assert peer.recent() == []

        await registry.close_all()
        await local.close()
        await peer.close()

    @pytest.mark.asyncio
    async def test_keep_alive_answered_while_relay_is_stalled(self, signer, connector, wait_until):
        """A bus that never completes a publish must not hold up the media socket."""
        broadcaster = TranscriptBroadcaster(instance_id="local", bus=StalledBus())
        await broadcaster.start()
        registry = ConnectionRegistry(signer=signer, broadcaster=broadcaster, connect=connector)

        _, _, media_ws = await _run_session(registry, connector, wait_until)
        media_ws.feed(TRANSCRIPT_FRAME)
        media_ws.feed({"msg_type": 12, "timestamp": 777})
        await wait_until(lambda: media_ws.sent_of_type(MessageType.KEEP_ALIVE_RESP), timeout=2.0)

        assert media_ws.sent_of_type(13) == [{"msg_type": 13, "timestamp": 777}]
        assert len(broadcaster.recent()) == 1

        await registry.close_all()
        await broadcaster.close()
