"""RTMS signaling channel.

States: CONNECTING -> HANDSHAKE_SENT -> ESTABLISHED -> CLOSED.

The signaling socket authenticates the stream, discovers the media
server URL and stays open for the life of the session: keep-alives are
answered here and the CLIENT_READY_ACK for the media channel is sent on
this socket.
"""

from __future__ import annotations

from src.rtms_relay.rtms.channels.base import ProtocolChannel
from src.rtms_relay.rtms.schemas import (
    STATUS_OK,
    ChannelState,
    ClientReadyAck,
    HandshakeRequest,
    HandshakeResponse,
    InboundMessage,
    MessageType,
    StateUpdate,
)
from src.rtms_relay.rtms.urls import resolve_ws_url


class SignalingChannel(ProtocolChannel):
    """First-stage RTMS connection for one meeting stream."""

    CHANNEL = "signaling"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._handlers.update(
            {
                MessageType.SIGNALING_HAND_SHAKE_RESP: self._handle_handshake_response,
                MessageType.STREAM_STATE_UPDATE: self._handle_state_update,
                MessageType.SESSION_STATE_UPDATE: self._handle_state_update,
            }
        )

    async def on_open(self) -> None:
        handshake = HandshakeRequest(
            meeting_uuid=self.meeting_uuid,
            rtms_stream_id=self.stream_id,
            signature=self._sign(),
        )
        await self.send(handshake)
        self._state = ChannelState.HANDSHAKE_SENT
        self._log.info("rtms.signaling.handshake_sent", sequence=handshake.sequence)

    async def _handle_handshake_response(self, message: InboundMessage) -> None:
        response = HandshakeResponse.model_validate(message.body)

        if self._state is not ChannelState.HANDSHAKE_SENT:
            self._log.debug("rtms.signaling.handshake_response_ignored", state=self._state.value)
            return

        if response.status_code != STATUS_OK:
            # Remote side closes the socket if it means to abort.
            self._log.warning(
                "rtms.signaling.handshake_rejected",
                status_code=response.status_code,
                reason=response.reason,
            )
            return

        self._state = ChannelState.ESTABLISHED
        self._log.info("rtms.signaling.handshake_ok")

        media_url = resolve_ws_url(response.media_server_urls)
        if media_url is None:
            self._log.warning("rtms.signaling.media_url_missing")
            return

        self._registry.open_media(self, media_url)

    async def _handle_state_update(self, message: InboundMessage) -> None:
        update = StateUpdate.model_validate(message.body)
        self._log.info(
            "rtms.signaling.state_update",
            msg_type=update.msg_type,
            state=update.state,
            reason=update.reason,
            stop_reason=update.stop_reason,
        )

    async def forward_ready_ack(self, stream_id: str) -> bool:
        """Send CLIENT_READY_ACK for ``stream_id`` on this socket.

        Called by the media channel once its data handshake succeeds.

        Returns:
            False if this channel is closed or not connected.
        """
        sent = await self.send(ClientReadyAck(rtms_stream_id=stream_id))
        if sent:
            self._log.info("rtms.signaling.ready_ack_sent")
        else:
            self._log.warning("rtms.signaling.ready_ack_dropped", state=self._state.value)
        return sent
