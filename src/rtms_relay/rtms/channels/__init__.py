"""RTMS signaling and media channels."""

from src.rtms_relay.rtms.channels.base import ProtocolChannel, ReadyAckForwarder
from src.rtms_relay.rtms.channels.media import MediaChannel
from src.rtms_relay.rtms.channels.signaling import SignalingChannel

__all__ = ["MediaChannel", "ProtocolChannel", "ReadyAckForwarder", "SignalingChannel"]
