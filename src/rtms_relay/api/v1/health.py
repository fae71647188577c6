"""Health check endpoints.

/health is the liveness probe; /health/sessions lists the meetings this
instance currently holds RTMS channels for.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from src.rtms_relay.api.deps import get_broadcaster, get_registry
from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster
from src.rtms_relay.rtms.registry import ConnectionRegistry

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    registry: ConnectionRegistry = Depends(get_registry),
    broadcaster: TranscriptBroadcaster = Depends(get_broadcaster),
):
    """Basic liveness check.

    No external dependencies are checked -- just that the server is running.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "instance_id": broadcaster.instance_id,
        "active_meetings": len(registry),
        "subscribers": broadcaster.subscriber_count,
    }


@router.get("/health/sessions")
async def list_sessions(registry: ConnectionRegistry = Depends(get_registry)):
    """Channel states of every registered meeting."""
    sessions = registry.snapshot()
    return {"count": len(sessions), "sessions": sessions}
