"""FastAPI dependency injection for the long-lived service objects.

The registry and the broadcaster are created once by the application
lifespan and stored on ``app.state``.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster
from src.rtms_relay.rtms.registry import ConnectionRegistry


def _state_attr(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name} not initialized",
        )
    return value


async def get_registry(request: Request) -> ConnectionRegistry:
    """Get the per-meeting connection registry."""
    return _state_attr(request, "registry")


async def get_broadcaster(request: Request) -> TranscriptBroadcaster:
    """Get the transcript broadcaster of this instance."""
    return _state_attr(request, "broadcaster")
