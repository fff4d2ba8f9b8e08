"""Router modules for FastAPI web API."""

from web.routers import build, builds, config, health, iso

__all__ = ["build", "builds", "config", "health", "iso"]
