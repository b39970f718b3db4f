"""API middleware package."""

from src.leadsync.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
