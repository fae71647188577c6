"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan events that build the transcript broadcaster, its cluster relay
bus and the RTMS connection registry, the v1 API router and the webhook
route.
"""

from __future__ import annotations

import functools
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
import websockets
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.rtms_relay.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.rtms_relay.api.v1.router import router as v1_router
from src.rtms_relay.api.v1.webhook import create_webhook_router
from src.rtms_relay.broadcast.broadcaster import TranscriptBroadcaster
from src.rtms_relay.broadcast.bus import ClusterBus, InMemoryClusterBus, RedisClusterBus
from src.rtms_relay.config import ClusterBusBackend, Settings, get_settings
from src.rtms_relay.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.rtms_relay.core.redis import close_redis, get_redis_pool
from src.rtms_relay.core.security import SignatureProvider
from src.rtms_relay.rtms.registry import ConnectionRegistry

log = structlog.get_logger(__name__)


def build_cluster_bus(settings: Settings) -> ClusterBus:
    """Relay bus selected by CLUSTER_BUS_BACKEND."""
    if settings.CLUSTER_BUS_BACKEND == ClusterBusBackend.redis:
        return RedisClusterBus(get_redis_pool(), channel=settings.RELAY_CHANNEL)
    return InMemoryClusterBus()


async def start_broadcaster(settings: Settings, bus: ClusterBus) -> TranscriptBroadcaster:
    """Start a broadcaster on ``bus``.

    If the bus cannot start it is closed and a broadcaster without relay
    is returned; the instance then serves its local subscribers only.
    """
    options = {
        "instance_id": settings.INSTANCE_ID,
        "recent_limit": settings.RECENT_TRANSCRIPTS_LIMIT,
        "subscriber_queue_size": settings.SUBSCRIBER_QUEUE_SIZE,
    }
    broadcaster = TranscriptBroadcaster(
        bus=bus,
        relay_queue_size=settings.RELAY_QUEUE_SIZE,
        relay_timeout=settings.RELAY_PUBLISH_TIMEOUT_SECONDS,
        **options,
    )
    try:
        await broadcaster.start()
    except Exception:
        log.warning("relay.bus_start_failed", exc_info=True)
        try:
            await bus.close()
        except Exception:
            log.warning("relay.bus_close_failed", exc_info=True)
        return TranscriptBroadcaster(**options)

    log.info(
        "app.relay_ready",
        backend=settings.CLUSTER_BUS_BACKEND.value,
        instance_id=settings.INSTANCE_ID,
    )
    return broadcaster


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the RTMS services on startup, close on shutdown."""
    settings = get_settings()
    configure_structlog()

    # Initialize Sentry if DSN is configured
    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    broadcaster = await start_broadcaster(settings, build_cluster_bus(settings))

    if not settings.ZOOM_CLIENT_SECRET:
        log.warning("rtms.client_secret_missing", hint="handshakes will fail to sign")

    registry = ConnectionRegistry(
        signer=SignatureProvider(settings.ZOOM_CLIENT_ID, settings.ZOOM_CLIENT_SECRET),
        broadcaster=broadcaster,
        connect=functools.partial(
            websockets.connect,
            open_timeout=settings.WS_OPEN_TIMEOUT_SECONDS,
            close_timeout=settings.WS_CLOSE_TIMEOUT_SECONDS,
        ),
    )

    app.state.broadcaster = broadcaster
    app.state.registry = registry
    log.info("app.started", environment=settings.ENVIRONMENT.value)

    yield

    # Shutdown
    await registry.close_all()
    await broadcaster.close()
    await close_redis()
    log.info("app.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="RTMS Transcript Relay",
        version="0.1.0",
        description="Zoom RTMS transcript ingestion with live fan-out across instances",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    # Include v1 API router (health, transcripts)
    app.include_router(v1_router)

    # Zoom webhook (path from WEBHOOK_PATH)
    app.include_router(create_webhook_router(settings.WEBHOOK_PATH))

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
