"""Zoom webhook endpoint.

Handles the three events that drive RTMS sessions:
- endpoint.url_validation: answer the challenge with an HMAC of plainToken
- meeting.rtms_started: open the meeting's signaling channel
- meeting.rtms_stopped: close both channels and forget the meeting

Every other event is acknowledged and ignored. The route path comes from
WEBHOOK_PATH, so the router is built by ``create_webhook_router``.
"""

from __future__ import annotations

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError

from src.rtms_relay.api.deps import get_registry
from src.rtms_relay.config import get_settings
from src.rtms_relay.core.security import hmac_sha256_hex
from src.rtms_relay.rtms.channels.base import short_id
from src.rtms_relay.rtms.errors import SignatureError
from src.rtms_relay.rtms.registry import ConnectionRegistry
from src.rtms_relay.rtms.schemas import (
    RtmsStartedPayload,
    UrlValidationResponse,
    WebhookEventType,
    WebhookRequest,
)

logger = structlog.get_logger(__name__)

EVENT_RECEIVED = {"status": "Event received"}


async def handle_webhook(
    request: Request,
    registry: ConnectionRegistry = Depends(get_registry),
):
    """Dispatch one Zoom webhook delivery.

    Raises:
        HTTPException(400): Body is not a JSON webhook object.
        HTTPException(500): URL validation requested without a secret token.
    """
    try:
        body = await request.json()
        webhook = WebhookRequest.model_validate(body)
    except (json.JSONDecodeError, UnicodeDecodeError, ValidationError) as exc:
        logger.warning("webhook.invalid_body", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook body",
        ) from exc

    event = webhook.event
    payload = webhook.payload
    request.state.webhook_event = event

    if event == WebhookEventType.URL_VALIDATION.value and payload.get("plainToken"):
        plain_token = str(payload["plainToken"])
        try:
            encrypted = hmac_sha256_hex(get_settings().ZOOM_SECRET_TOKEN, plain_token)
        except SignatureError as exc:
            logger.error("webhook.url_validation_failed", error=str(exc))
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Webhook secret token not configured",
            ) from exc
        logger.info("webhook.url_validated")
        return UrlValidationResponse(plainToken=plain_token, encryptedToken=encrypted)

    if event == WebhookEventType.RTMS_STARTED.value:
        try:
            started = RtmsStartedPayload.model_validate(payload)
        except ValidationError as exc:
            logger.warning(
                "webhook.rtms_started_invalid",
                error_count=exc.error_count(),
                fields=sorted(payload),
            )
            return EVENT_RECEIVED

        request.state.meeting = short_id(started.meeting_uuid)
        logger.info(
            "webhook.rtms_started",
            meeting=short_id(started.meeting_uuid),
            stream_id=started.rtms_stream_id,
        )
        await registry.register(
            started.meeting_uuid,
            started.rtms_stream_id,
            started.server_urls,
        )
        return EVENT_RECEIVED

    if event == WebhookEventType.RTMS_STOPPED.value:
        meeting_uuid = payload.get("meeting_uuid")
        if not isinstance(meeting_uuid, str) or not meeting_uuid:
            logger.warning("webhook.rtms_stopped_invalid", fields=sorted(payload))
            return EVENT_RECEIVED

        request.state.meeting = short_id(meeting_uuid)
        removed = await registry.deregister(meeting_uuid)
        logger.info("webhook.rtms_stopped", meeting=short_id(meeting_uuid), removed=removed)
        return EVENT_RECEIVED

    logger.debug("webhook.event_ignored", webhook_event=event)
    return EVENT_RECEIVED


def create_webhook_router(path: str) -> APIRouter:
    """Router exposing ``handle_webhook`` at ``path``."""
    router = APIRouter(tags=["webhook"])
    router.add_api_route(path, handle_webhook, methods=["POST"])
    return router
