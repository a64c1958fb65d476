"""Launchpad FastAPI application."""

from .main import create_app
from .settings import LaunchpadSettings

__all__ = ["create_app", "LaunchpadSettings"]
