"""Pydantic v2 schemas for the Zoom RTMS wire protocol and transcript events.

Message type tags and field names follow the RTMS contract exactly.
Outbound requests serialize to the JSON objects the remote service
expects. Inbound responses are validated leniently (unknown fields are
kept) so protocol additions on the remote side never break decoding.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

PROTOCOL_VERSION = 1
STATUS_OK = 0
SEQUENCE_MAX = 1_000_000_000


# ── Enums ────────────────────────────────────────────────────────────────────


class MessageType(IntEnum):
    """Numeric ``msg_type`` tags shared by the signaling and media sockets."""

    SIGNALING_HAND_SHAKE_REQ = 1
    SIGNALING_HAND_SHAKE_RESP = 2
    DATA_HAND_SHAKE_REQ = 3
    DATA_HAND_SHAKE_RESP = 4
    CLIENT_READY_ACK = 7
    STREAM_STATE_UPDATE = 8
    SESSION_STATE_UPDATE = 9
    KEEP_ALIVE_REQ = 12
    KEEP_ALIVE_RESP = 13
    MEDIA_DATA_TRANSCRIPT = 17


class MediaType(IntEnum):
    """Media selector for the data handshake. Only transcripts are requested."""

    TRANSCRIPT = 8


class ChannelState(str, Enum):
    """Lifecycle states of the signaling and media channels."""

    CONNECTING = "connecting"
    HANDSHAKE_SENT = "handshake_sent"
    ESTABLISHED = "established"
    DATA_HANDSHAKE_SENT = "data_handshake_sent"
    READY = "ready"
    CLOSED = "closed"


# ── Decoded frame ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class InboundMessage:
    """A decoded socket frame: its type tag plus the full JSON object."""

    msg_type: int
    body: dict[str, Any] = field(default_factory=dict)


# ── Outbound messages ────────────────────────────────────────────────────────


def _random_sequence() -> int:
    return random.randrange(SEQUENCE_MAX)


class HandshakeRequest(BaseModel):
    """Signaling handshake sent as soon as the signaling socket opens."""

    msg_type: MessageType = MessageType.SIGNALING_HAND_SHAKE_REQ
    protocol_version: int = PROTOCOL_VERSION
    meeting_uuid: str
    rtms_stream_id: str
    sequence: int = Field(default_factory=_random_sequence)
    signature: str


class DataHandshakeRequest(BaseModel):
    """Media handshake declaring transcript-only, unencrypted payloads."""

    msg_type: MessageType = MessageType.DATA_HAND_SHAKE_REQ
    protocol_version: int = PROTOCOL_VERSION
    meeting_uuid: str
    rtms_stream_id: str
    signature: str
    media_type: MediaType = MediaType.TRANSCRIPT
    payload_encryption: bool = False


class KeepAliveResponse(BaseModel):
    """Liveness reply; ``timestamp`` must be the request's value verbatim."""

    msg_type: MessageType = MessageType.KEEP_ALIVE_RESP
    timestamp: Any


class ClientReadyAck(BaseModel):
    """Sent on the signaling socket once the media handshake succeeds."""

    msg_type: MessageType = MessageType.CLIENT_READY_ACK
    rtms_stream_id: str


# ── Inbound messages ─────────────────────────────────────────────────────────


class _Inbound(BaseModel):
    model_config = ConfigDict(extra="allow")

    msg_type: int


class HandshakeResponse(_Inbound):
    """Signaling handshake response; carries the media server URLs on success."""

    status_code: int
    reason: str | int | None = None
    media_server: dict[str, Any] | None = None

    @property
    def media_server_urls(self) -> Any:
        """Raw ``media_server.server_urls`` value in whatever shape it arrived."""
        if not self.media_server:
            return None
        return self.media_server.get("server_urls")


class DataHandshakeResponse(_Inbound):
    """Media handshake response."""

    status_code: int
    reason: str | int | None = None


class KeepAliveRequest(_Inbound):
    """Liveness probe. ``timestamp`` is kept as whatever JSON value arrived."""

    timestamp: Any


class StateUpdate(_Inbound):
    """Stream or session state notification, logged only."""

    state: int | None = None
    reason: int | None = None
    stop_reason: int | None = None


# ── Transcript events ────────────────────────────────────────────────────────


class TranscriptEvent(BaseModel):
    """One transcript utterance decoded from a MEDIA_DATA_TRANSCRIPT frame.

    Field aliases match the wire ``content`` object (``user_id``,
    ``user_name``, ``data``, ``timestamp``), which is also the shape
    delivered to subscribers and polling clients.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    speaker_id: str = Field(alias="user_id")
    speaker_name: str | None = Field(default=None, alias="user_name")
    text: str = Field(alias="data", min_length=1)
    timestamp: int

    @field_validator("speaker_id", mode="before")
    @classmethod
    def _coerce_speaker_id(cls, value: Any) -> Any:
        """Zoom sends numeric user ids; keep them as opaque strings."""
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    def to_content(self) -> dict[str, Any]:
        """Wire-shaped ``content`` dict."""
        return self.model_dump(by_alias=True)

    def to_payload(self) -> dict[str, Any]:
        """Full transcript message as delivered to subscribers."""
        return {
            "msg_type": int(MessageType.MEDIA_DATA_TRANSCRIPT),
            "content": self.to_content(),
        }


class PollResult(BaseModel):
    """Response of the polling interface."""

    transcripts: list[TranscriptEvent]
    timestamp: int = Field(description="Server time (epoch ms) to use as the next cursor")
    total_stored: int

    def to_response(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ── Webhook ──────────────────────────────────────────────────────────────────


class WebhookEventType(str, Enum):
    """Zoom webhook events acted on by the service."""

    URL_VALIDATION = "endpoint.url_validation"
    RTMS_STARTED = "meeting.rtms_started"
    RTMS_STOPPED = "meeting.rtms_stopped"


class WebhookRequest(BaseModel):
    """Zoom webhook body. ``payload`` is interpreted per event."""

    model_config = ConfigDict(extra="allow")

    event: str
    payload: dict[str, Any] = Field(default_factory=dict)


class RtmsStartedPayload(BaseModel):
    """Payload of ``meeting.rtms_started``."""

    model_config = ConfigDict(extra="allow")

    meeting_uuid: str = Field(min_length=1)
    rtms_stream_id: str = Field(min_length=1)
    server_urls: Any = None


class UrlValidationResponse(BaseModel):
    plainToken: str  # noqa: N815
    encryptedToken: str  # noqa: N815
