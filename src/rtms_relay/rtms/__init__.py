"""Zoom RTMS protocol layer.

Wire schemas and codec, signaling/media channel state machines and the
per-meeting connection registry.

Exports:
    MessageType: Numeric ``msg_type`` tags of the RTMS contract.
    TranscriptEvent: One decoded transcript utterance.
    ConnectionRegistry: Owner of every meeting's channels.
"""

from __future__ import annotations

from src.rtms_relay.rtms.schemas import MessageType, TranscriptEvent

__all__ = [
    "ConnectionRegistry",
    "MessageType",
    "TranscriptEvent",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the registry to avoid circular imports with the channels."""
    if name == "ConnectionRegistry":
        from src.rtms_relay.rtms.registry import ConnectionRegistry

        return ConnectionRegistry
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
