"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to the
core build API.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import TYPE_CHECKING

from fastapi import FastAPI

from ubuntu_autoinstaller import __version__
from ubuntu_autoinstaller.artifacts.store import ArtifactStore
from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator
from ubuntu_autoinstaller.builds.registry import BuildRegistry
from ubuntu_autoinstaller.builds.status import StatusReporter
from ubuntu_autoinstaller.builds.sweeper import Sweeper
from ubuntu_autoinstaller.config import Settings, get_settings
from ubuntu_autoinstaller.db import open_catalog
from ubuntu_autoinstaller.log import configure_logging
from web.routers import build, builds, config, health, iso

if TYPE_CHECKING:
    from ubuntu_autoinstaller.builds.plan import StepSpec

API_PREFIX = "/api/v1"


def create_app(
    settings: Settings | None = None,
    plan: Sequence[StepSpec] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment if omitted.
        plan: Step plan override; the standard plan if omitted.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Wire the build services on startup and stop them on shutdown."""
        app_settings = settings or get_settings()
        configure_logging(app_settings.log_level)

        engine, session_factory = open_catalog(app_settings.db_url)

        store = ArtifactStore(
            artifacts_dir=app_settings.artifacts_dir,
            uploads_dir=app_settings.uploads_dir,
            session_factory=session_factory,
            max_upload_bytes=app_settings.max_upload_bytes,
        )
        registry = BuildRegistry()
        orchestrator = BuildOrchestrator.from_settings(
            app_settings, registry, store, plan=plan
        )
        sweeper = Sweeper(
            orchestrator,
            store,
            retention=timedelta(hours=app_settings.retention_hours),
            interval=app_settings.sweep_interval,
        )

        app.state.settings = app_settings
        app.state.session_factory = session_factory
        app.state.store = store
        app.state.registry = registry
        app.state.orchestrator = orchestrator
        app.state.reporter = StatusReporter(registry, store)

        sweeper.start()
        try:
            yield
        finally:
            sweeper.stop()
            orchestrator.shutdown(timeout=app_settings.kill_grace_seconds + 5)
            engine.dispose()

    application = FastAPI(
        title="Ubuntu Autoinstall ISO Builder API",
        description="HTTP API for building unattended-install Ubuntu ISOs",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    application.include_router(health.router, tags=["health"])
    application.include_router(
        config.router, prefix=f"{API_PREFIX}/config", tags=["config"]
    )
    application.include_router(
        build.router, prefix=f"{API_PREFIX}/build", tags=["build"]
    )
    application.include_router(
        builds.router, prefix=f"{API_PREFIX}/builds", tags=["build"]
    )
    application.include_router(iso.router, prefix=f"{API_PREFIX}/iso", tags=["iso"])

    return application


# Create the default application instance
app = create_app()
