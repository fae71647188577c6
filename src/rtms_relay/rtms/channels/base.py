"""Shared machinery for the RTMS signaling and media sockets.

Both channels follow the same shape: connect, send a signed handshake,
then dispatch each inbound frame through a table keyed on ``msg_type``.
Keep-alive requests are answered inline by every channel. Any transport
failure ends the channel; its slot in the registry is released and the
error never leaves the channel's task.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from typing import TYPE_CHECKING, Any, Protocol

import structlog
import websockets
from pydantic import BaseModel, ValidationError
from websockets.exceptions import WebSocketException

from src.rtms_relay.core.monitoring import (
    rtms_channels_active,
    rtms_keepalives_total,
    rtms_malformed_frames_total,
    rtms_messages_total,
)
from src.rtms_relay.core.security import SignatureProvider
from src.rtms_relay.rtms import codec
from src.rtms_relay.rtms.errors import MalformedFrameError, RtmsError
from src.rtms_relay.rtms.schemas import (
    ChannelState,
    InboundMessage,
    KeepAliveRequest,
    KeepAliveResponse,
    MessageType,
)

if TYPE_CHECKING:
    from src.rtms_relay.rtms.registry import ConnectionRegistry

logger = structlog.get_logger(__name__)

Connector = Callable[[str], AbstractAsyncContextManager[Any]]
MessageHandler = Callable[[InboundMessage], Awaitable[None]]


class ReadyAckForwarder(Protocol):
    """Capability handed to MediaChannel for confirming readiness.

    The RTMS protocol expects CLIENT_READY_ACK on the signaling socket even
    though readiness is established by the media handshake.
    """

    async def forward_ready_ack(self, stream_id: str) -> bool: ...


def short_id(meeting_uuid: str) -> str:
    """Meeting UUID shortened for log lines."""
    return f"{meeting_uuid[:8]}..."


class ProtocolChannel:
    """Base class for one RTMS WebSocket connection.

    Subclasses set ``CHANNEL``, implement ``on_open`` and register their
    message handlers in ``self._handlers``.

    Args:
        meeting_uuid: Meeting the stream belongs to.
        stream_id: RTMS stream id.
        url: WebSocket URL to connect to.
        signer: Signs the handshake.
        registry: Owner of this channel's slot.
        connect: Factory returning an async context manager that yields a
            connected socket. Defaults to ``websockets.connect``.
    """

    CHANNEL = "channel"

    def __init__(
        self,
        meeting_uuid: str,
        stream_id: str,
        url: str,
        *,
        signer: SignatureProvider,
        registry: ConnectionRegistry,
        connect: Connector | None = None,
    ) -> None:
        self.meeting_uuid = meeting_uuid
        self.stream_id = stream_id
        self.url = url
        self._signer = signer
        self._registry = registry
        self._connect: Connector = connect or websockets.connect
        self._ws: Any = None
        self._state = ChannelState.CONNECTING
        self._task: asyncio.Task | None = None
        self._released = False
        self._handlers: dict[int, MessageHandler] = {
            MessageType.KEEP_ALIVE_REQ: self._handle_keep_alive,
        }
        self._log = logger.bind(
            channel=self.CHANNEL,
            meeting=short_id(meeting_uuid),
            stream_id=stream_id,
        )

    # ── State ───────────────────────────────────────────────────────────

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is ChannelState.CLOSED

    @property
    def task(self) -> asyncio.Task | None:
        return self._task

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> asyncio.Task:
        """Run the channel in a background task and return it."""
        if self._task is None:
            self._task = asyncio.create_task(
                self.run(),
                name=f"rtms_{self.CHANNEL}_{self.meeting_uuid[:8]}",
            )
        return self._task

    async def run(self) -> None:
        """Connect, handshake and process frames until the socket closes.

        Never raises (except on cancellation); every exit path marks the
        channel closed and releases its registry slot.
        """
        try:
            async with self._connect(self.url) as ws:
                if self.is_closed:
                    return
                self._ws = ws
                rtms_channels_active.labels(channel=self.CHANNEL).inc()
                self._log.info("rtms.channel_opened")
                try:
                    await self.on_open()
                    async for raw in ws:
                        await self.dispatch(raw)
                finally:
                    rtms_channels_active.labels(channel=self.CHANNEL).dec()
                self._log.info(
                    "rtms.channel_closed",
                    code=getattr(ws, "close_code", None),
                    reason=getattr(ws, "close_reason", None) or "none",
                )
        except asyncio.CancelledError:
            raise
        except RtmsError as exc:
            self._log.error("rtms.channel_aborted", error=str(exc))
        except (WebSocketException, OSError, TimeoutError) as exc:
            self._log.warning(
                "rtms.transport_error",
                error=str(exc),
                error_type=type(exc).__name__,
            )
        except Exception:
            self._log.error("rtms.channel_failed", exc_info=True)
        finally:
            self._mark_closed()

    async def close(self) -> None:
        """Close the socket; the run loop exits and releases the slot."""
        if self.is_closed and self._ws is None:
            return
        self._state = ChannelState.CLOSED
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                self._log.debug("rtms.close_error", exc_info=True)
        elif self._task is not None and not self._task.done():
            self._task.cancel()
        self._log.info("rtms.channel_close_requested")

    def _mark_closed(self) -> None:
        self._state = ChannelState.CLOSED
        self._ws = None
        if not self._released:
            self._released = True
            self._registry.release(self)

    # ── Protocol ────────────────────────────────────────────────────────

    async def on_open(self) -> None:
        """Send the handshake for this channel."""
        raise NotImplementedError

    def _sign(self) -> str:
        return self._signer.sign(self.meeting_uuid, self.stream_id)

    async def send(self, message: BaseModel) -> bool:
        """Send a protocol message if the socket is open.

        Returns:
            False when the channel is closed or not connected yet.
        """
        ws = self._ws
        if ws is None or self.is_closed:
            return False
        await ws.send(codec.encode(message))
        return True

    async def dispatch(self, raw: codec.Frame) -> None:
        """Decode one frame and route it to the handler for its type.

        Malformed frames are logged and dropped; the channel stays open.
        Frames arriving after close are ignored.
        """
        if self.is_closed:
            self._log.debug("rtms.frame_after_close")
            return

        try:
            message = codec.decode(raw)
        except MalformedFrameError as exc:
            self._drop_malformed(str(exc))
            return

        rtms_messages_total.labels(
            channel=self.CHANNEL, msg_type=str(message.msg_type)
        ).inc()

        handler = self._handlers.get(message.msg_type)
        if handler is None:
            self._log.debug("rtms.message_unhandled", msg_type=message.msg_type)
            return

        try:
            await handler(message)
        except ValidationError as exc:
            self._drop_malformed(
                f"msg_type {message.msg_type}: {exc.error_count()} validation error(s)"
            )

    def _drop_malformed(self, error: str) -> None:
        rtms_malformed_frames_total.labels(channel=self.CHANNEL).inc()
        self._log.warning("rtms.frame_malformed", error=error)

    async def _handle_keep_alive(self, message: InboundMessage) -> None:
        request = KeepAliveRequest.model_validate(message.body)
        await self.send(KeepAliveResponse(timestamp=request.timestamp))
        rtms_keepalives_total.labels(channel=self.CHANNEL).inc()
        self._log.debug("rtms.keep_alive_answered", timestamp=request.timestamp)
