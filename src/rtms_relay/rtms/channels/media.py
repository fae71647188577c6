"""RTMS media channel.

States: CONNECTING -> DATA_HANDSHAKE_SENT -> READY -> CLOSED.

Requests the transcript stream only, with payload encryption disabled.
Every decoded transcript frame becomes a TranscriptEvent handed to the
broadcaster.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.rtms_relay.rtms.channels.base import ProtocolChannel, ReadyAckForwarder
from src.rtms_relay.rtms.schemas import (
    STATUS_OK,
    ChannelState,
    DataHandshakeRequest,
    DataHandshakeResponse,
    InboundMessage,
    MessageType,
    TranscriptEvent,
)

if TYPE_CHECKING:
    from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster

TEXT_PREVIEW_CHARS = 50


class MediaChannel(ProtocolChannel):
    """Second-stage RTMS connection carrying transcript frames.

    Args:
        ready_ack: Channel that sends CLIENT_READY_ACK once the data
            handshake succeeds (the meeting's signaling channel).
        broadcaster: Receives every decoded transcript event.

    Remaining arguments are those of ProtocolChannel.
    """

    CHANNEL = "media"

    def __init__(
        self,
        *args,
        ready_ack: ReadyAckForwarder,
        broadcaster: TranscriptBroadcaster,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._ready_ack = ready_ack
        self._broadcaster = broadcaster
        self._handlers.update(
            {
                MessageType.DATA_HAND_SHAKE_RESP: self._handle_data_handshake_response,
                MessageType.MEDIA_DATA_TRANSCRIPT: self._handle_transcript,
            }
        )

    async def on_open(self) -> None:
        await self.send(
            DataHandshakeRequest(
                meeting_uuid=self.meeting_uuid,
                rtms_stream_id=self.stream_id,
                signature=self._sign(),
            )
        )
        self._state = ChannelState.DATA_HANDSHAKE_SENT
        self._log.info("rtms.media.handshake_sent", media_type="transcript")

    async def _handle_data_handshake_response(self, message: InboundMessage) -> None:
        response = DataHandshakeResponse.model_validate(message.body)

        if self._state is not ChannelState.DATA_HANDSHAKE_SENT:
            self._log.debug("rtms.media.handshake_response_ignored", state=self._state.value)
            return

        if response.status_code != STATUS_OK:
            self._log.warning(
                "rtms.media.handshake_rejected",
                status_code=response.status_code,
                reason=response.reason,
            )
            return

        await self._ready_ack.forward_ready_ack(self.stream_id)
        self._state = ChannelState.READY
        self._log.info("rtms.media.ready")

    async def _handle_transcript(self, message: InboundMessage) -> None:
        content = message.body.get("content")
        if not isinstance(content, dict) or not content.get("data"):
            self._drop_malformed("transcript frame without content.data")
            return

        event = TranscriptEvent.model_validate(content)
        self._log.info(
            "rtms.media.transcript_received",
            speaker_name=event.speaker_name or "unknown",
            preview=event.text[:TEXT_PREVIEW_CHARS],
        )
        await self._broadcaster.publish(event)
