"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

import uuid
from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class ClusterBusBackend(str, Enum):
    redis = "redis"
    memory = "memory"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ALLOWED_ORIGINS: str = "*"

    # Monitoring
    SENTRY_DSN: str = ""

    # Zoom RTMS credentials
    ZOOM_CLIENT_ID: str = ""
    ZOOM_CLIENT_SECRET: str = ""
    ZOOM_SECRET_TOKEN: str = ""  # Webhook secret used for endpoint.url_validation
    WEBHOOK_PATH: str = "/webhook"

    # RTMS sockets
    WS_OPEN_TIMEOUT_SECONDS: float = 10.0
    WS_CLOSE_TIMEOUT_SECONDS: float = 5.0

    # Transcript distribution
    RECENT_TRANSCRIPTS_LIMIT: int = 50
    SUBSCRIBER_QUEUE_SIZE: int = 256

    # Cross-instance relay
    CLUSTER_BUS_BACKEND: ClusterBusBackend = ClusterBusBackend.redis
    REDIS_URL: str = "redis://localhost:6379/0"
    RELAY_CHANNEL: str = "rtms-transcripts"
    RELAY_QUEUE_SIZE: int = 1024
    RELAY_PUBLISH_TIMEOUT_SECONDS: float = 5.0
    INSTANCE_ID: str = Field(default_factory=lambda: str(uuid.uuid4()))


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
