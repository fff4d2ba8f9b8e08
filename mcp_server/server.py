"""MCP server implementation.

This module creates the FastMCP server and registers all tools.
Tools are thin wrappers around the in-process build orchestrator:
builds started through a tool run in background threads of the server
process and are polled with the status tools.

Tools:
- Return structured errors with codes
- Never raise to the client
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Annotated, Any

from mcp.server.fastmcp import FastMCP
from pydantic import Field, ValidationError
from sqlalchemy import Engine

from mcp_server.errors import (
    INTERNAL_ERROR,
    error_from_exception,
    make_error,
    validation_error,
)
from mcp_server.schemas import (
    ArtifactInfo,
    BuildArtifactResponse,
    BuildLogsResponse,
    BuildStatusResponse,
    CancelBuildResponse,
    ListBuildsResponse,
    StartBuildResponse,
)
from ubuntu_autoinstaller.artifacts.store import ArtifactStore
from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator
from ubuntu_autoinstaller.builds.registry import BuildRegistry
from ubuntu_autoinstaller.builds.status import StatusReporter
from ubuntu_autoinstaller.builds.sweeper import Sweeper
from ubuntu_autoinstaller.config import Settings, get_settings
from ubuntu_autoinstaller.db import open_catalog
from ubuntu_autoinstaller.types import BuildStatus
from ubuntu_autoinstaller.userdata.schema import BuildRequestError, validate_build_request

if TYPE_CHECKING:
    from ubuntu_autoinstaller.builds.plan import StepSpec

logger = logging.getLogger(__name__)

# Upper bound for list_builds, matching the HTTP API
MAX_LIST_LIMIT = 1000

# Create the FastMCP server instance
mcp = FastMCP(
    name="ubuntu-autoinstaller",
)


@dataclass
class BuildServices:
    """Build services shared by all tools of one server process."""

    orchestrator: BuildOrchestrator
    reporter: StatusReporter
    engine: Engine | None = None
    sweeper: Sweeper | None = None

    def close(self, timeout: float = 30.0) -> None:
        """Stop maintenance, cancel running builds and release the catalog."""
        if self.sweeper is not None:
            self.sweeper.stop()
        self.orchestrator.shutdown(timeout=timeout)
        if self.engine is not None:
            self.engine.dispose()


_services: BuildServices | None = None
_services_lock = threading.Lock()


def create_services(
    settings: Settings | None = None,
    plan: Sequence[StepSpec] | None = None,
    start_sweeper: bool = True,
) -> BuildServices:
    """Wire a registry, artifact store and orchestrator.

    Args:
        settings: Settings to use; loaded from the environment if omitted.
        plan: Step plan override; the standard plan if omitted.
        start_sweeper: Start the background maintenance thread.

    Returns:
        BuildServices ready to accept builds.
    """
    settings = settings or get_settings()
    engine, session_factory = open_catalog(settings.db_url)
    store = ArtifactStore(
        artifacts_dir=settings.artifacts_dir,
        uploads_dir=settings.uploads_dir,
        session_factory=session_factory,
        max_upload_bytes=settings.max_upload_bytes,
    )
    registry = BuildRegistry()
    orchestrator = BuildOrchestrator.from_settings(settings, registry, store, plan=plan)
    sweeper = None
    if start_sweeper:
        sweeper = Sweeper(
            orchestrator,
            store,
            retention=timedelta(hours=settings.retention_hours),
            interval=settings.sweep_interval,
        )
        sweeper.start()
    return BuildServices(
        orchestrator=orchestrator,
        reporter=StatusReporter(registry, store),
        engine=engine,
        sweeper=sweeper,
    )


def get_services() -> BuildServices:
    """Get the process-wide build services, creating them on first use."""
    global _services
    with _services_lock:
        if _services is None:
            _services = create_services()
        return _services


def set_services(services: BuildServices | None) -> None:
    """Replace the process-wide build services.

    Passing None drops the current services; the next tool call creates
    fresh ones from the environment.
    """
    global _services
    with _services_lock:
        _services = services


@mcp.tool()
def start_build(
    request: Annotated[
        dict[str, Any],
        Field(
            description=(
                "Build request: source_type (local|download), source_iso or "
                "code_name, user_data or autoinstall, and optional flags"
            )
        ),
    ],
) -> StartBuildResponse:
    """Validate a build request and start building an autoinstall ISO.

    The build runs in the background; poll get_build_status until the
    status is completed, failed or cancelled.

    Returns:
        StartBuildResponse with the build id or error.
    """
    try:
        config = validate_build_request(request)
    except ValidationError as e:
        error = validation_error(
            "Invalid build request",
            details={"errors": json.loads(e.json(include_url=False))},
        )
        return StartBuildResponse(success=False, error=error.to_dict())
    except BuildRequestError as e:
        return StartBuildResponse(
            success=False, error=validation_error(str(e)).to_dict()
        )

    try:
        job = get_services().orchestrator.start(config)
    except Exception as e:
        logger.exception("Starting build failed")
        error = make_error(INTERNAL_ERROR, str(e))
        return StartBuildResponse(success=False, error=error.to_dict())

    return StartBuildResponse(success=True, build_id=job.id, status=job.status.value)


@mcp.tool()
def get_build_status(
    build_id: Annotated[str, Field(description="Build ID returned by start_build")],
) -> BuildStatusResponse:
    """Get the status, progress and step states of a build.

    Returns:
        BuildStatusResponse with the build view or error.
    """
    try:
        view = get_services().reporter.get_status(build_id)
    except Exception as e:
        error = error_from_exception(e, build_id)
        return BuildStatusResponse(success=False, error=error.to_dict())

    return BuildStatusResponse(success=True, build=view)


@mcp.tool()
def get_build_logs(
    build_id: Annotated[str, Field(description="Build ID returned by start_build")],
    since: Annotated[
        int, Field(description="Offset of the first line to return")
    ] = 0,
) -> BuildLogsResponse:
    """Get build log lines starting at an offset.

    Pass the returned next_offset as since to fetch only new lines.

    Returns:
        BuildLogsResponse with log lines or error.
    """
    if since < 0:
        return BuildLogsResponse(
            success=False,
            build_id=build_id,
            error=validation_error("since must not be negative").to_dict(),
        )

    try:
        view = get_services().reporter.get_logs(build_id, since)
    except Exception as e:
        error = error_from_exception(e, build_id)
        return BuildLogsResponse(
            success=False, build_id=build_id, error=error.to_dict()
        )

    return BuildLogsResponse(
        success=True,
        build_id=build_id,
        logs=view.logs,
        next_offset=view.next_offset,
    )


@mcp.tool()
def cancel_build(
    build_id: Annotated[str, Field(description="Build ID to cancel")],
) -> CancelBuildResponse:
    """Request cancellation of a build.

    Cancelling a finished build leaves it unchanged.

    Returns:
        CancelBuildResponse with the resulting status or error.
    """
    try:
        job = get_services().orchestrator.cancel(build_id)
    except Exception as e:
        error = error_from_exception(e, build_id)
        return CancelBuildResponse(
            success=False, build_id=build_id, error=error.to_dict()
        )

    return CancelBuildResponse(
        success=True,
        build_id=job.id,
        status=job.status.value,
        cancel_requested=job.cancel_requested,
    )


@mcp.tool()
def get_build_artifact(
    build_id: Annotated[str, Field(description="Build ID returned by start_build")],
) -> BuildArtifactResponse:
    """Get the stored ISO of a completed build.

    Returns:
        BuildArtifactResponse with path, size and SHA-256 or error.
    """
    try:
        record = get_services().reporter.get_artifact(build_id)
    except Exception as e:
        error = error_from_exception(e, build_id)
        return BuildArtifactResponse(
            success=False, build_id=build_id, error=error.to_dict()
        )

    return BuildArtifactResponse(
        success=True,
        build_id=build_id,
        artifact=ArtifactInfo(
            handle=record.handle,
            filename=record.filename,
            path=record.path,
            size_bytes=record.size_bytes,
            sha256=record.sha256,
        ),
    )


@mcp.tool()
def list_builds(
    status: Annotated[
        str | None,
        Field(description="Filter by status: queued, running, completed, failed, cancelled"),
    ] = None,
    limit: Annotated[
        int, Field(ge=1, le=MAX_LIST_LIMIT, description="Maximum results to return")
    ] = 100,
) -> ListBuildsResponse:
    """List builds known to this server, newest first.

    Returns:
        ListBuildsResponse with build views or error.
    """
    if not 1 <= limit <= MAX_LIST_LIMIT:
        error = validation_error(f"limit must be between 1 and {MAX_LIST_LIMIT}")
        return ListBuildsResponse(success=False, builds=[], total=0, error=error.to_dict())

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in BuildStatus)
            error = validation_error(f"Invalid status: {status}. Use one of {valid}")
            return ListBuildsResponse(
                success=False, builds=[], total=0, error=error.to_dict()
            )

    try:
        builds = get_services().reporter.list_builds(status=status_filter, limit=limit)
    except Exception as e:
        error = make_error(INTERNAL_ERROR, str(e))
        return ListBuildsResponse(
            success=False, builds=[], total=0, error=error.to_dict()
        )

    return ListBuildsResponse(success=True, builds=builds, total=len(builds))


__all__ = [
    "BuildServices",
    "cancel_build",
    "create_services",
    "get_build_artifact",
    "get_build_logs",
    "get_build_status",
    "get_services",
    "list_builds",
    "mcp",
    "set_services",
    "start_build",
]
