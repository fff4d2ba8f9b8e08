"""Read-only views of build jobs for polling clients.

The reporter never mutates a job. Every call reads one published snapshot,
so a view is always internally consistent.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from ubuntu_autoinstaller.artifacts.store import ArtifactNotFoundError
from ubuntu_autoinstaller.builds.registry import BuildNotFoundError
from ubuntu_autoinstaller.types import ArtifactRecord, BuildStatus, StepState

if TYPE_CHECKING:
    from ubuntu_autoinstaller.artifacts.store import ArtifactStore
    from ubuntu_autoinstaller.builds.models import BuildJob, LogLine
    from ubuntu_autoinstaller.builds.registry import BuildRegistry


class BuildNotReadyError(Exception):
    """Raised when an artifact is requested before the build finished."""

    def __init__(self, build_id: str, status: BuildStatus) -> None:
        super().__init__(f"Build {build_id} is still {status.value}")
        self.code = "build_not_ready"
        self.build_id = build_id
        self.status = status


class ArtifactUnavailableError(Exception):
    """Raised when a finished build has no artifact (failed or cancelled)."""

    def __init__(self, build_id: str, status: BuildStatus) -> None:
        super().__init__(f"Build {build_id} {status.value}; no artifact available")
        self.code = "artifact_not_found"
        self.build_id = build_id
        self.status = status


class StepView(BaseModel):
    """Public state of one step."""

    name: str
    state: StepState
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None


class ErrorView(BaseModel):
    """Public description of a build failure."""

    kind: str
    step: str | None = None
    message: str


class BuildStatusView(BaseModel):
    """Public state of a build."""

    build_id: str
    status: BuildStatus
    progress: int = Field(ge=0, le=100)
    steps: list[StepView]
    error: ErrorView | None = None
    artifact_handle: str | None = None
    cancel_requested: bool = False
    cancel_reason: str | None = None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None


class LogsView(BaseModel):
    """A page of log lines and the offset to continue from."""

    build_id: str
    logs: list[str]
    next_offset: int


def to_status_view(job: BuildJob) -> BuildStatusView:
    """Convert a job snapshot to its public view."""
    error = None
    if job.error is not None:
        error = ErrorView(
            kind=job.error.kind.value,
            step=job.error.step.value if job.error.step else None,
            message=job.error.message,
        )
    return BuildStatusView(
        build_id=job.id,
        status=job.status,
        progress=job.progress,
        steps=[
            StepView(
                name=step.name.value,
                state=step.state,
                started_at=step.started_at,
                finished_at=step.finished_at,
                error=step.error,
            )
            for step in job.steps
        ],
        error=error,
        artifact_handle=job.artifact_handle,
        cancel_requested=job.cancel_requested,
        cancel_reason=job.cancel_reason.value if job.cancel_reason else None,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
    )


class StatusReporter:
    """Answers status, log and artifact queries."""

    def __init__(self, registry: BuildRegistry, store: ArtifactStore) -> None:
        self.registry = registry
        self.store = store

    def get_status(self, build_id: str) -> BuildStatusView:
        """Return the status view of a build.

        Raises:
            BuildNotFoundError: If the id is unknown.
        """
        return to_status_view(self.registry.get(build_id))

    def list_builds(
        self, status: BuildStatus | None = None, limit: int = 100
    ) -> list[BuildStatusView]:
        """Return status views of known builds, newest first."""
        return [to_status_view(job) for job in self.registry.list(status, limit)]

    def get_log_lines(self, build_id: str, since: int = 0) -> tuple[list[LogLine], int]:
        """Return raw log lines from ``since`` and the next offset.

        An offset past the end yields no lines and the current length.

        Raises:
            BuildNotFoundError: If the id is unknown.
            ValueError: If ``since`` is negative.
        """
        if since < 0:
            raise ValueError("since must not be negative")
        job = self.registry.get(build_id)
        return list(job.log_lines(since)), job.log_count

    def get_logs(self, build_id: str, since: int = 0) -> LogsView:
        """Return formatted log lines from ``since``.

        Raises:
            BuildNotFoundError: If the id is unknown.
            ValueError: If ``since`` is negative.
        """
        lines, next_offset = self.get_log_lines(build_id, since)
        return LogsView(
            build_id=build_id,
            logs=[line.format() for line in lines],
            next_offset=next_offset,
        )

    def iter_logs(
        self,
        build_id: str,
        since: int = 0,
        poll_interval: float = 0.5,
    ) -> Iterator[LogLine]:
        """Yield log lines as they appear until the build is terminal.

        Raises:
            BuildNotFoundError: If the id is unknown.
        """
        offset = since
        while True:
            job = self.registry.get(build_id)
            for line in job.log_lines(offset):
                yield line
            offset = max(offset, job.log_count)
            if job.is_terminal:
                return
            time.sleep(poll_interval)

    def get_artifact(self, build_id: str) -> ArtifactRecord:
        """Resolve the artifact of a completed build.

        Raises:
            BuildNotFoundError: If the id is unknown or the artifact was pruned.
            BuildNotReadyError: If the build has not finished.
            ArtifactUnavailableError: If the build failed or was cancelled.
        """
        job = self.registry.get(build_id)
        if not job.is_terminal:
            raise BuildNotReadyError(build_id, job.status)
        if job.status != BuildStatus.COMPLETED or job.artifact_handle is None:
            raise ArtifactUnavailableError(build_id, job.status)
        try:
            return self.store.resolve(job.artifact_handle)
        except ArtifactNotFoundError as e:
            raise BuildNotFoundError(build_id) from e


__all__ = [
    "ArtifactUnavailableError",
    "BuildNotReadyError",
    "BuildStatusView",
    "ErrorView",
    "LogsView",
    "StatusReporter",
    "StepView",
    "to_status_view",
]
