"""Transcript delivery endpoints.

GET /events streams live transcripts over Server-Sent Events. Clients
that cannot hold an SSE connection poll GET /api/poll-transcripts with
the ``timestamp`` of their previous response as ``since``.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query
from sse_starlette.sse import EventSourceResponse, ServerSentEvent

from src.rtms_relay.api.deps import get_broadcaster
from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["transcripts"])

TRANSCRIPT_EVENT = "transcript"


@router.get("/events")
async def stream_transcripts(
    broadcaster: TranscriptBroadcaster = Depends(get_broadcaster),
):
    """SSE stream of live transcripts.

    Sends a ``connected`` comment first, then one ``transcript`` event per
    delivered message. Past transcripts are not replayed.
    """

    async def event_generator():
        subscriber = broadcaster.subscribe()
        try:
            yield ServerSentEvent(comment="connected")
            async for message in subscriber:
                yield {"event": TRANSCRIPT_EVENT, "data": message}
        finally:
            broadcaster.unsubscribe(subscriber)
            logger.info(
                "transcripts.sse_disconnected",
                subscriber_id=getattr(subscriber, "subscriber_id", None),
            )

    return EventSourceResponse(event_generator())


@router.get("/api/poll-transcripts")
async def poll_transcripts(
    since: int | None = Query(default=None, description="Epoch ms cursor from the previous poll"),
    broadcaster: TranscriptBroadcaster = Depends(get_broadcaster),
):
    """Transcripts stored since ``since`` (or since the previous poll)."""
    return broadcaster.poll(since).to_response()
