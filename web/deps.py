"""Service dependencies for FastAPI.

The lifespan handler stores the build services on ``app.state``; these
functions hand them to route handlers via FastAPI dependency injection,
so tests can run several isolated apps side by side.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request

from ubuntu_autoinstaller.artifacts.store import ArtifactStore
from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator
from ubuntu_autoinstaller.builds.registry import BuildRegistry
from ubuntu_autoinstaller.builds.status import StatusReporter
from ubuntu_autoinstaller.config import Settings


def get_app_settings(request: Request) -> Settings:
    """Get the settings the app was started with."""
    settings: Any = request.app.state.settings
    return settings  # type: ignore[no-any-return]


def get_registry(request: Request) -> BuildRegistry:
    """Get the build registry from app state."""
    registry: Any = request.app.state.registry
    return registry  # type: ignore[no-any-return]


def get_orchestrator(request: Request) -> BuildOrchestrator:
    """Get the build orchestrator from app state."""
    orchestrator: Any = request.app.state.orchestrator
    return orchestrator  # type: ignore[no-any-return]


def get_reporter(request: Request) -> StatusReporter:
    """Get the status reporter from app state."""
    reporter: Any = request.app.state.reporter
    return reporter  # type: ignore[no-any-return]


def get_store(request: Request) -> ArtifactStore:
    """Get the artifact store from app state."""
    store: Any = request.app.state.store
    return store  # type: ignore[no-any-return]


__all__ = [
    "get_app_settings",
    "get_orchestrator",
    "get_registry",
    "get_reporter",
    "get_store",
]
