"""API middleware package."""

from src.crm_mirror.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
