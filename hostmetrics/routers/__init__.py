"""API routers for all endpoints."""

from hostmetrics.routers import dashboard

__all__ = ["dashboard"]
