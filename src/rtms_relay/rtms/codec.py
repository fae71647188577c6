"""Normalizes raw WebSocket frames into protocol messages and back.

The RTMS servers send JSON, but depending on the transport a frame can
arrive as ``str`` or as one of the binary buffer types. Everything is
decoded as UTF-8 JSON and must be an object with an integer ``msg_type``.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel

from src.rtms_relay.rtms.errors import MalformedFrameError
from src.rtms_relay.rtms.schemas import InboundMessage

Frame = str | bytes | bytearray | memoryview


def _frame_text(data: Any) -> str:
    if isinstance(data, str):
        return data
    if isinstance(data, memoryview):
        data = data.tobytes()
    if isinstance(data, (bytes, bytearray)):
        try:
            return bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedFrameError(f"Frame is not valid UTF-8: {exc}") from exc
    raise MalformedFrameError(f"Unsupported frame type: {type(data).__name__}")


def decode(data: Frame) -> InboundMessage:
    """Decode one socket frame.

    Args:
        data: Raw frame as received from the socket.

    Returns:
        InboundMessage with the ``msg_type`` tag and the full JSON object.

    Raises:
        MalformedFrameError: If the frame is not a JSON object carrying an
            integer ``msg_type``.
    """
    text = _frame_text(data)
    try:
        body = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedFrameError(f"Frame is not valid JSON: {exc.msg}") from exc

    if not isinstance(body, dict):
        raise MalformedFrameError("Frame is not a JSON object")

    msg_type = body.get("msg_type")
    if isinstance(msg_type, bool) or not isinstance(msg_type, int):
        raise MalformedFrameError(f"Frame has no integer msg_type: {msg_type!r}")

    return InboundMessage(msg_type=msg_type, body=body)


def encode(message: BaseModel) -> str:
    """Serialize an outbound protocol message to JSON text."""
    return message.model_dump_json()
