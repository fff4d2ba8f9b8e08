"""In-memory registry of build jobs.

The registry maps build ids to the latest BuildJob snapshot. Writers go
through update(), which applies a mutation under a per-job lock and then
publishes the result by replacing the stored reference. Readers never take
a lock; they get whichever complete snapshot was published last.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ubuntu_autoinstaller.builds.models import BuildJob, utcnow
from ubuntu_autoinstaller.types import BuildStatus, StepName

if TYPE_CHECKING:
    from ubuntu_autoinstaller.userdata.schema import BuildRequest

logger = logging.getLogger(__name__)

BUILD_ID_PREFIX = "build_"


class BuildRegistryError(Exception):
    """Base error for registry operations."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        super().__init__(message)
        self.code = code


class BuildNotFoundError(BuildRegistryError):
    """Raised when a build id is unknown."""

    def __init__(self, build_id: str) -> None:
        super().__init__(f"Build not found: {build_id}", code="build_not_found")
        self.build_id = build_id


class BuildStillActiveError(BuildRegistryError):
    """Raised when removing a build that has not finished."""

    def __init__(self, build_id: str) -> None:
        super().__init__(
            f"Build {build_id} is still active", code="build_still_active"
        )
        self.build_id = build_id


def new_build_id() -> str:
    """Generate an opaque, high-entropy build identifier."""
    return f"{BUILD_ID_PREFIX}{uuid.uuid4().hex}"


class BuildRegistry:
    """Thread-safe store of build job snapshots."""

    def __init__(self, id_factory: Callable[[], str] = new_build_id) -> None:
        self._id_factory = id_factory
        self._jobs: dict[str, BuildJob] = {}
        self._locks: dict[str, threading.Lock] = {}
        # Guards insertion and removal of ids, not job contents
        self._guard = threading.Lock()

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, build_id: object) -> bool:
        return build_id in self._jobs

    def create(
        self,
        config: BuildRequest,
        step_names: Iterable[StepName] | None = None,
        deadline: datetime | None = None,
    ) -> BuildJob:
        """Register a new queued job.

        Args:
            config: Validated build request; a deep copy is stored.
            step_names: Ordered steps of the job; all pipeline steps if omitted.
            deadline: Optional wall-clock deadline.

        Returns:
            The new job snapshot.

        Raises:
            BuildRegistryError: If the generated id is already registered.
        """
        build_id = self._id_factory()
        job = BuildJob.new(
            build_id,
            config,
            list(step_names) if step_names is not None else list(StepName),
            deadline=deadline,
        )
        with self._guard:
            if build_id in self._jobs:
                raise BuildRegistryError(
                    f"Build id collision: {build_id}", code="id_collision"
                )
            self._locks[build_id] = threading.Lock()
            self._jobs[build_id] = job
        logger.info("Registered build %s", build_id)
        return job

    def get(self, build_id: str) -> BuildJob:
        """Return the current snapshot of a job.

        Raises:
            BuildNotFoundError: If the id is unknown.
        """
        job = self._jobs.get(build_id)
        if job is None:
            raise BuildNotFoundError(build_id)
        return job

    def update(self, build_id: str, mutation: Callable[[BuildJob], BuildJob]) -> BuildJob:
        """Apply a mutation and publish the result atomically.

        Args:
            build_id: Job to mutate.
            mutation: Function returning the next snapshot.

        Returns:
            The published snapshot.

        Raises:
            BuildNotFoundError: If the id is unknown.
        """
        lock = self._locks.get(build_id)
        if lock is None:
            raise BuildNotFoundError(build_id)
        with lock:
            current = self.get(build_id)
            updated = mutation(current)
            if updated.id != build_id:
                raise BuildRegistryError(
                    f"Mutation changed build id {build_id} to {updated.id}"
                )
            self._jobs[build_id] = updated
            return updated

    def list(
        self, status: BuildStatus | None = None, limit: int | None = 100
    ) -> list[BuildJob]:
        """List jobs, newest first.

        Args:
            status: Only return jobs with this status.
            limit: Maximum number of jobs (None for all).

        Raises:
            ValueError: If limit is negative.
        """
        if limit is not None and limit < 0:
            raise ValueError("limit must not be negative")
        jobs = list(self._jobs.values())
        if status is not None:
            jobs = [job for job in jobs if job.status == status]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        if limit is not None:
            jobs = jobs[:limit]
        return jobs

    def delete(self, build_id: str) -> None:
        """Remove a terminal job.

        Raises:
            BuildNotFoundError: If the id is unknown.
            BuildStillActiveError: If the job is not terminal.
        """
        lock = self._locks.get(build_id)
        if lock is None:
            raise BuildNotFoundError(build_id)
        with self._guard, lock:
            job = self.get(build_id)
            if not job.is_terminal:
                raise BuildStillActiveError(build_id)
            del self._jobs[build_id]
            del self._locks[build_id]
        logger.info("Removed build %s", build_id)

    def prune(self, max_age: timedelta, now: datetime | None = None) -> list[str]:
        """Remove terminal jobs that finished more than max_age ago.

        Returns:
            Ids of removed jobs.
        """
        cutoff = (now or utcnow()) - max_age
        removed: list[str] = []
        for job in self.list(limit=None):
            finished = job.finished_at or job.updated_at
            if not job.is_terminal or finished > cutoff:
                continue
            try:
                self.delete(job.id)
            except BuildRegistryError as e:
                logger.debug("Skipping prune of %s: %s", job.id, e)
                continue
            removed.append(job.id)
        return removed


__all__ = [
    "BUILD_ID_PREFIX",
    "BuildNotFoundError",
    "BuildRegistry",
    "BuildRegistryError",
    "BuildStillActiveError",
    "new_build_id",
]
