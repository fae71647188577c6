"""V1 API router -- aggregates the fixed-path endpoint routers.

The webhook router is mounted separately by the app factory because its
path is configurable.
"""

from __future__ import annotations

from fastapi import APIRouter

from src.rtms_relay.api.v1 import health, transcripts

router = APIRouter()

router.include_router(health.router)
router.include_router(transcripts.router)
