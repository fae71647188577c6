"""Prometheus metrics and Sentry integration.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- RTMS channel, transcript and relay counters used by the protocol and
  distribution layers
- init_sentry(): Initialize Sentry
- get_metrics_response(): FastAPI route handler body for /metrics
"""

from __future__ import annotations

import time

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── RTMS Channel Metrics ─────────────────────────────────────────────────────

rtms_channels_active = Gauge(
    "rtms_channels_active",
    "Open RTMS sockets",
    ["channel"],
)

rtms_messages_total = Counter(
    "rtms_messages_total",
    "Decoded RTMS frames by channel and message type",
    ["channel", "msg_type"],
)

rtms_keepalives_total = Counter(
    "rtms_keepalives_total",
    "Keep-alive requests answered",
    ["channel"],
)

rtms_malformed_frames_total = Counter(
    "rtms_malformed_frames_total",
    "Frames dropped because they could not be decoded",
    ["channel"],
)

rtms_sessions_dropped_total = Counter(
    "rtms_sessions_dropped_total",
    "Session starts ignored because no signaling URL could be resolved",
)

# ── Distribution Metrics ─────────────────────────────────────────────────────

transcripts_published_total = Counter(
    "transcripts_published_total",
    "Transcript events published by this instance",
)

transcript_subscribers = Gauge(
    "transcript_subscribers",
    "Live local transcript subscribers",
)

transcript_delivery_failures_total = Counter(
    "transcript_delivery_failures_total",
    "Subscriber deliveries that failed and removed the subscriber",
)

relay_messages_total = Counter(
    "relay_messages_total",
    "Cross-instance relay envelopes",
    ["direction"],  # sent | received | echo | error | dropped
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Skips the /metrics endpoint itself to avoid self-referential counting.
    The SSE stream is counted once, when the response starts.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        endpoint = request.url.path

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
    )


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
