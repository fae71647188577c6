"""API middleware package."""

from src.rtms_relay.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
