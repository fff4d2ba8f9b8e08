"""Pydantic schemas for MCP tool responses.

These schemas define the structured output formats for MCP tools,
ensuring consistent JSON responses across all tools.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict

from ubuntu_autoinstaller.builds.status import BuildStatusView


class StartBuildResponse(BaseModel):
    """Response for start_build tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    build_id: str | None = None
    status: str | None = None
    error: dict[str, Any] | None = None


class BuildStatusResponse(BaseModel):
    """Response for get_build_status tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    build: BuildStatusView | None = None
    error: dict[str, Any] | None = None


class BuildLogsResponse(BaseModel):
    """Response for get_build_logs tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    build_id: str
    logs: list[str] = []
    next_offset: int = 0
    error: dict[str, Any] | None = None


class CancelBuildResponse(BaseModel):
    """Response for cancel_build tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    build_id: str
    status: str | None = None
    cancel_requested: bool = False
    error: dict[str, Any] | None = None


class ArtifactInfo(BaseModel):
    """Stored ISO of a completed build."""

    model_config = ConfigDict(extra="forbid")

    handle: str
    filename: str
    path: str
    size_bytes: int
    sha256: str


class BuildArtifactResponse(BaseModel):
    """Response for get_build_artifact tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    build_id: str
    artifact: ArtifactInfo | None = None
    error: dict[str, Any] | None = None


class ListBuildsResponse(BaseModel):
    """Response for list_builds tool."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    builds: list[BuildStatusView]
    total: int
    error: dict[str, Any] | None = None


__all__ = [
    "ArtifactInfo",
    "BuildArtifactResponse",
    "BuildLogsResponse",
    "BuildStatusResponse",
    "CancelBuildResponse",
    "ListBuildsResponse",
    "StartBuildResponse",
]
