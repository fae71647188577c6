"""Per-meeting ownership of RTMS channels.

ConnectionRegistry is the only place channel handles live. The webhook
layer inserts sessions (register) and removes them (deregister); channels
release their own slot when their socket ends. A single asyncio.Lock
guards the session map, and it is only ever held around dictionary
operations, never across socket I/O, so one meeting can never stall
another.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from src.rtms_relay.core.monitoring import rtms_sessions_dropped_total
from src.rtms_relay.core.security import SignatureProvider
from src.rtms_relay.rtms.channels.base import Connector, ProtocolChannel, short_id
from src.rtms_relay.rtms.channels.media import MediaChannel
from src.rtms_relay.rtms.channels.signaling import SignalingChannel
from src.rtms_relay.rtms.urls import resolve_ws_url

if TYPE_CHECKING:
    from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster

logger = structlog.get_logger(__name__)

__all__ = ["ConnectionRegistry", "MeetingSession", "resolve_ws_url"]


@dataclass
class MeetingSession:
    """Channel handles for one meeting. Either slot is None once closed."""

    meeting_uuid: str
    stream_id: str
    signaling: SignalingChannel | None = None
    media: MediaChannel | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def channels(self) -> list[ProtocolChannel]:
        return [c for c in (self.signaling, self.media) if c is not None]

    def summary(self) -> dict[str, Any]:
        return {
            "meeting": short_id(self.meeting_uuid),
            "stream_id": self.stream_id,
            "signaling": self.signaling.state.value if self.signaling else None,
            "media": self.media.state.value if self.media else None,
            "started_at": self.started_at.isoformat(),
        }


class ConnectionRegistry:
    """Opens, tracks and tears down the RTMS channels of every meeting.

    Args:
        signer: Signs channel handshakes.
        broadcaster: Receives transcripts from media channels.
        connect: Socket factory passed to every channel (tests inject a
            fake; production uses ``websockets.connect``).
    """

    def __init__(
        self,
        signer: SignatureProvider,
        broadcaster: TranscriptBroadcaster,
        connect: Connector | None = None,
    ) -> None:
        self._signer = signer
        self._broadcaster = broadcaster
        self._connect = connect
        self._sessions: dict[str, MeetingSession] = {}
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, meeting_uuid: object) -> bool:
        return meeting_uuid in self._sessions

    def get(self, meeting_uuid: str) -> MeetingSession | None:
        return self._sessions.get(meeting_uuid)

    def snapshot(self) -> list[dict[str, Any]]:
        """Read-only summaries of the active sessions."""
        return [session.summary() for session in list(self._sessions.values())]

    # ── Session lifecycle ───────────────────────────────────────────────

    async def register(
        self,
        meeting_uuid: str,
        stream_id: str,
        server_urls: Any,
    ) -> SignalingChannel | None:
        """Start the signaling channel for a meeting stream.

        Args:
            meeting_uuid: Meeting UUID from the rtms_started webhook.
            stream_id: RTMS stream id.
            server_urls: Candidate signaling URLs in any shape accepted by
                ``resolve_ws_url``.

        Returns:
            The started SignalingChannel, or None when no URL resolves
            (the session is dropped and logged, never raised).
        """
        url = resolve_ws_url(server_urls)
        if url is None:
            rtms_sessions_dropped_total.inc()
            logger.warning(
                "rtms.session_dropped",
                meeting=short_id(meeting_uuid),
                stream_id=stream_id,
                reason="no signaling url",
            )
            return None

        channel = SignalingChannel(
            meeting_uuid,
            stream_id,
            url,
            signer=self._signer,
            registry=self,
            connect=self._connect,
        )

        async with self._lock:
            session = self._sessions.get(meeting_uuid)
            if session is None:
                session = MeetingSession(meeting_uuid=meeting_uuid, stream_id=stream_id)
                self._sessions[meeting_uuid] = session
            replaced = session.channels()
            session.signaling = channel
            session.media = None
            session.stream_id = stream_id

        if replaced:
            logger.info(
                "rtms.session_replaced",
                meeting=short_id(meeting_uuid),
                closed_channels=len(replaced),
            )
            await asyncio.gather(*(old.close() for old in replaced), return_exceptions=True)

        channel.start()
        logger.info(
            "rtms.session_registered",
            meeting=short_id(meeting_uuid),
            stream_id=stream_id,
            active_sessions=len(self._sessions),
        )
        return channel

    def open_media(self, signaling: SignalingChannel, media_url: str) -> MediaChannel | None:
        """Start the media channel discovered by ``signaling``.

        Only opens when ``signaling`` still owns its meeting's signaling
        slot, so a late handshake on a torn-down session is dropped.
        """
        session = self._sessions.get(signaling.meeting_uuid)
        if session is None or session.signaling is not signaling:
            logger.info(
                "rtms.media_open_skipped",
                meeting=short_id(signaling.meeting_uuid),
                reason="session no longer registered",
            )
            return None

        media = MediaChannel(
            signaling.meeting_uuid,
            signaling.stream_id,
            media_url,
            signer=self._signer,
            registry=self,
            connect=self._connect,
            ready_ack=signaling,
            broadcaster=self._broadcaster,
        )
        replaced = session.media
        session.media = media
        if replaced is not None:
            # Old media socket no longer owns the slot, so its release is a no-op.
            task = asyncio.create_task(replaced.close())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        media.start()
        logger.info("rtms.media_opening", meeting=short_id(signaling.meeting_uuid))
        return media

    def release(self, channel: ProtocolChannel) -> None:
        """Clear the slot still held by ``channel``; called when it closes.

        Never creates or removes session entries.
        """
        session = self._sessions.get(channel.meeting_uuid)
        if session is None:
            return
        if session.signaling is channel:
            session.signaling = None
        elif session.media is channel:
            session.media = None
        else:
            return
        logger.info(
            "rtms.channel_released",
            meeting=short_id(channel.meeting_uuid),
            channel=channel.CHANNEL,
        )

    async def deregister(self, meeting_uuid: str) -> bool:
        """Close both channels of a meeting and forget it.

        Idempotent: unknown meetings are a no-op.

        Returns:
            True if a session was removed.
        """
        async with self._lock:
            session = self._sessions.pop(meeting_uuid, None)

        if session is None:
            logger.debug("rtms.deregister_unknown", meeting=short_id(meeting_uuid))
            return False

        channels = session.channels()
        results = await asyncio.gather(
            *(channel.close() for channel in channels),
            return_exceptions=True,
        )
        for channel, result in zip(channels, results):
            if isinstance(result, Exception):
                logger.warning(
                    "rtms.channel_close_failed",
                    meeting=short_id(meeting_uuid),
                    channel=channel.CHANNEL,
                    error=str(result),
                )

        logger.info(
            "rtms.session_deregistered",
            meeting=short_id(meeting_uuid),
            closed_channels=len(channels),
            active_sessions=len(self._sessions),
        )
        return True

    async def close_all(self) -> None:
        """Deregister every meeting (application shutdown)."""
        for meeting_uuid in list(self._sessions):
            await self.deregister(meeting_uuid)
