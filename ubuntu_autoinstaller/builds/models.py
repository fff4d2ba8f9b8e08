"""Build job value objects.

A BuildJob is an immutable snapshot of one build. Every mutation returns a
new object; the registry publishes snapshots by swapping references, so a
reader always sees a complete job. The methods below enforce the job and
step state machines and raise InvalidTransitionError on illegal moves.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ubuntu_autoinstaller.types import (
    BuildStatus,
    CancelReason,
    ErrorKind,
    LogLevel,
    StepName,
    StepState,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ubuntu_autoinstaller.userdata.schema import BuildRequest

BUILD_COMPLETED_MARKER = "Build completed"
INTERRUPTED = "interrupted"


class InvalidTransitionError(Exception):
    """Raised when a job or step is moved to a state it cannot reach."""

    def __init__(self, message: str, code: str = "invalid_transition") -> None:
        super().__init__(message)
        self.code = code


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LogLine:
    """A single user-facing build log line."""

    offset: int
    timestamp: datetime
    level: LogLevel
    message: str

    def format(self) -> str:
        """Render as ``<iso-timestamp> [LEVEL] message``."""
        return f"{self.timestamp.isoformat()} [{self.level.value}] {self.message}"


@dataclass(frozen=True)
class BuildError:
    """Why a build failed."""

    kind: ErrorKind
    message: str
    step: StepName | None = None


@dataclass(frozen=True)
class StepRecord:
    """State of one pipeline step inside a job."""

    name: StepName
    state: StepState = StepState.PENDING
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None

    def start(self, now: datetime) -> StepRecord:
        if self.state != StepState.PENDING:
            raise InvalidTransitionError(
                f"Step {self.name.value} cannot start from {self.state.value}"
            )
        return replace(self, state=StepState.RUNNING, started_at=now)

    def complete(self, now: datetime) -> StepRecord:
        if self.state != StepState.RUNNING:
            raise InvalidTransitionError(
                f"Step {self.name.value} cannot complete from {self.state.value}"
            )
        return replace(self, state=StepState.COMPLETED, finished_at=now)

    def fail(self, message: str, now: datetime) -> StepRecord:
        if self.state != StepState.RUNNING:
            raise InvalidTransitionError(
                f"Step {self.name.value} cannot fail from {self.state.value}"
            )
        return replace(self, state=StepState.FAILED, finished_at=now, error=message)

    def skip(self, now: datetime, error: str | None = None) -> StepRecord:
        # pending -> skipped (disabled or cancelled), running -> skipped (interrupted)
        if self.state not in (StepState.PENDING, StepState.RUNNING):
            raise InvalidTransitionError(
                f"Step {self.name.value} cannot be skipped from {self.state.value}"
            )
        return replace(self, state=StepState.SKIPPED, finished_at=now, error=error)


class LogBuffer:
    """Log storage shared by the successive snapshots of one job.

    A snapshot sees only the first ``log_count`` entries of its buffer.
    Entries below a published count never change, so readers take no lock
    and appending a line costs the same however long the log is.
    """

    def __init__(self, lines: Iterable[LogLine] = ()) -> None:
        self._lines: list[LogLine] = list(lines)

    def __len__(self) -> int:
        return len(self._lines)

    def append_after(self, count: int, line: LogLine) -> LogBuffer:
        """Store ``line`` as entry ``count`` and return the buffer holding it.

        Appends in place when ``count`` is the end of the buffer. A snapshot
        whose buffer has grown past it (an older snapshot, or a mutation
        that was never published) gets a copy of its own lines instead.
        """
        if count == len(self._lines):
            self._lines.append(line)
            return self
        return LogBuffer([*self._lines[:count], line])

    def lines(self, start: int, stop: int) -> tuple[LogLine, ...]:
        return tuple(self._lines[start:stop])


@dataclass(frozen=True)
class BuildJob:
    """Immutable snapshot of a build job.

    Attributes:
        id: Opaque unique identifier.
        config: Frozen copy of the validated request.
        steps: Step records in execution order.
        status: Overall job status.
        progress: Percentage 0-100; 100 only when completed.
        log_count: Number of log lines this snapshot sees.
        log_buffer: Line storage shared with later snapshots; read it
            through ``logs`` or ``log_lines``.
        artifact_handle: Set only when completed.
        error: Set only when failed.
        created_at: Creation time (UTC).
        updated_at: Time of the last mutation (UTC).
        started_at: Time the worker picked the job up.
        finished_at: Time the job reached a terminal status.
        deadline: Wall-clock deadline, if any.
        cancel_requested: Whether cancellation was requested.
        cancel_reason: Why cancellation was requested.
    """

    id: str
    config: BuildRequest
    steps: tuple[StepRecord, ...]
    status: BuildStatus = BuildStatus.QUEUED
    progress: int = 0
    log_count: int = 0
    artifact_handle: str | None = None
    error: BuildError | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    deadline: datetime | None = None
    cancel_requested: bool = False
    cancel_reason: CancelReason | None = None
    log_buffer: LogBuffer = field(default_factory=LogBuffer, repr=False, compare=False)

    @classmethod
    def new(
        cls,
        build_id: str,
        config: BuildRequest,
        step_names: Iterable[StepName],
        deadline: datetime | None = None,
        now: datetime | None = None,
    ) -> BuildJob:
        """Create a queued job with every step pending."""
        now = now or utcnow()
        return cls(
            id=build_id,
            config=config.model_copy(deep=True),
            steps=tuple(StepRecord(name=name) for name in step_names),
            created_at=now,
            updated_at=now,
            deadline=deadline,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal()

    @property
    def logs(self) -> tuple[LogLine, ...]:
        """All log lines of this snapshot."""
        return self.log_buffer.lines(0, self.log_count)

    def log_lines(self, since: int = 0) -> tuple[LogLine, ...]:
        """Log lines from offset ``since`` to the end of this snapshot."""
        return self.log_buffer.lines(since, self.log_count)

    def step(self, name: StepName) -> StepRecord:
        """Return the record of a step.

        Raises:
            KeyError: If the job has no such step.
        """
        for record in self.steps:
            if record.name == name:
                return record
        raise KeyError(name)

    def _touch(self, **changes: object) -> BuildJob:
        return replace(self, updated_at=utcnow(), **changes)  # type: ignore[arg-type]

    def _require_active(self, action: str) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(
                f"Cannot {action} build {self.id}: already {self.status.value}"
            )

    def _replace_step(self, name: StepName, record: StepRecord) -> tuple[StepRecord, ...]:
        self.step(name)
        return tuple(record if s.name == name else s for s in self.steps)

    def _resolved_progress(self, steps: tuple[StepRecord, ...]) -> int:
        resolved = sum(
            1 for s in steps if s.state in (StepState.COMPLETED, StepState.SKIPPED)
        )
        value = min(99, math.floor(100 * resolved / len(steps))) if steps else 0
        return max(self.progress, value)

    def append_log(self, message: str, level: LogLevel = LogLevel.INFO) -> BuildJob:
        """Append one log line."""
        line = LogLine(
            offset=self.log_count, timestamp=utcnow(), level=level, message=message
        )
        return self._touch(
            log_buffer=self.log_buffer.append_after(self.log_count, line),
            log_count=self.log_count + 1,
        )

    def mark_running(self, deadline: datetime | None = None) -> BuildJob:
        """Move the job from queued to running.

        Args:
            deadline: Wall-clock deadline counted from now; keeps the
                existing one if omitted.
        """
        if self.status != BuildStatus.QUEUED:
            raise InvalidTransitionError(
                f"Build {self.id} cannot start from {self.status.value}"
            )
        now = utcnow()
        return replace(
            self,
            status=BuildStatus.RUNNING,
            started_at=now,
            updated_at=now,
            deadline=deadline or self.deadline,
        )

    def start_step(self, name: StepName) -> BuildJob:
        """Mark a step running."""
        if self.status != BuildStatus.RUNNING:
            raise InvalidTransitionError(
                f"Cannot start step {name.value}: build is {self.status.value}"
            )
        now = utcnow()
        steps = self._replace_step(name, self.step(name).start(now))
        return replace(self, steps=steps, updated_at=now)

    def complete_step(self, name: StepName) -> BuildJob:
        """Mark a step completed and recompute progress."""
        self._require_active("complete a step of")
        now = utcnow()
        steps = self._replace_step(name, self.step(name).complete(now))
        return replace(
            self, steps=steps, progress=self._resolved_progress(steps), updated_at=now
        )

    def skip_step(self, name: StepName, error: str | None = None) -> BuildJob:
        """Mark a step skipped and recompute progress."""
        self._require_active("skip a step of")
        now = utcnow()
        steps = self._replace_step(name, self.step(name).skip(now, error))
        return replace(
            self, steps=steps, progress=self._resolved_progress(steps), updated_at=now
        )

    def fail_step(
        self,
        name: StepName,
        message: str,
        kind: ErrorKind = ErrorKind.STEP_FAILURE,
    ) -> BuildJob:
        """Mark a running step failed and fail the job.

        Later steps stay pending.
        """
        self._require_active("fail a step of")
        now = utcnow()
        steps = self._replace_step(name, self.step(name).fail(message, now))
        return replace(
            self,
            steps=steps,
            status=BuildStatus.FAILED,
            error=BuildError(kind=kind, step=name, message=message),
            finished_at=now,
            updated_at=now,
        )

    def mark_failed(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.INFRASTRUCTURE,
        step: StepName | None = None,
    ) -> BuildJob:
        """Fail the job outside of a step boundary.

        A step still running is marked failed with the same message.
        """
        self._require_active("fail")
        now = utcnow()
        steps = tuple(
            s.fail(message, now) if s.state == StepState.RUNNING else s
            for s in self.steps
        )
        return replace(
            self,
            steps=steps,
            status=BuildStatus.FAILED,
            error=BuildError(kind=kind, step=step, message=message),
            finished_at=now,
            updated_at=now,
        )

    def mark_completed(self, artifact_handle: str) -> BuildJob:
        """Publish the artifact and complete the job in one step."""
        self._require_active("complete")
        if self.status != BuildStatus.RUNNING:
            raise InvalidTransitionError(
                f"Build {self.id} cannot complete from {self.status.value}"
            )
        unresolved = [s.name.value for s in self.steps if not s.state.is_terminal()]
        if unresolved:
            raise InvalidTransitionError(
                f"Build {self.id} has unresolved steps: {', '.join(unresolved)}"
            )
        if any(s.state == StepState.FAILED for s in self.steps):
            raise InvalidTransitionError(f"Build {self.id} has failed steps")
        job = self.append_log(BUILD_COMPLETED_MARKER)
        return replace(
            job,
            status=BuildStatus.COMPLETED,
            progress=100,
            artifact_handle=artifact_handle,
            finished_at=job.updated_at,
        )

    def request_cancel(self, reason: CancelReason = CancelReason.USER) -> BuildJob:
        """Record a cancellation request; no-op when already requested."""
        self._require_active("cancel")
        if self.cancel_requested:
            return self
        return self._touch(cancel_requested=True, cancel_reason=reason)

    def mark_cancelled(self) -> BuildJob:
        """Resolve remaining steps as skipped and cancel the job.

        A running step is recorded as interrupted.
        """
        self._require_active("cancel")
        now = utcnow()
        steps = tuple(
            s.skip(now, INTERRUPTED if s.state == StepState.RUNNING else None)
            if not s.state.is_terminal()
            else s
            for s in self.steps
        )
        return replace(
            self,
            steps=steps,
            status=BuildStatus.CANCELLED,
            cancel_requested=True,
            cancel_reason=self.cancel_reason or CancelReason.USER,
            finished_at=now,
            updated_at=now,
        )


__all__ = [
    "BUILD_COMPLETED_MARKER",
    "INTERRUPTED",
    "BuildError",
    "BuildJob",
    "InvalidTransitionError",
    "LogBuffer",
    "LogLine",
    "StepRecord",
    "utcnow",
]
