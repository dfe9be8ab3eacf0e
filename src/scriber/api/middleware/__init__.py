"""API middleware package."""

from src.scriber.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
