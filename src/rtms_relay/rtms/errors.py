"""Exceptions raised by the RTMS protocol and distribution layers."""

from __future__ import annotations


class RtmsError(Exception):
    """Base class for relay errors."""


class SignatureError(RtmsError, ValueError):
    """Handshake signature cannot be computed (missing credentials)."""


class MalformedFrameError(RtmsError, ValueError):
    """Inbound socket frame cannot be decoded into a protocol message."""


class SubscriberClosedError(RtmsError):
    """A subscriber sink can no longer accept messages."""
