"""Routers package."""

from app.api.routers import health


__all__ = ["health"]
