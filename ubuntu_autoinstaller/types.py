"""Shared type definitions for ubuntu_autoinstaller.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class BuildStatus(str, Enum):
    """Overall status of a build job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check whether no further transitions can occur."""
        return self in TERMINAL_BUILD_STATUSES


TERMINAL_BUILD_STATUSES = frozenset(
    {BuildStatus.COMPLETED, BuildStatus.FAILED, BuildStatus.CANCELLED}
)


class StepState(str, Enum):
    """State of a single pipeline step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    def is_terminal(self) -> bool:
        """Check whether the step has been resolved."""
        return self in (StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED)


class StepName(str, Enum):
    """Names of the pipeline steps, in execution order."""

    PREPARE = "prepare"
    ACQUIRE_SOURCE = "acquire-source"
    VERIFY = "verify"
    EXTRACT = "extract"
    APPLY_CONFIGURATION = "apply-configuration"
    INSTALL_PACKAGES = "install-packages"
    CONFIGURE_KERNEL = "configure-kernel"
    REPACKAGE = "repackage"
    FINALIZE = "finalize"


class ErrorKind(str, Enum):
    """Category of a build failure."""

    STEP_FAILURE = "step_failure"
    INFRASTRUCTURE = "infrastructure"


class LogLevel(str, Enum):
    """Level of a build log line."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class SourceType(str, Enum):
    """Where the base ISO comes from."""

    DOWNLOAD = "download"
    LOCAL = "local"


class CancelReason(str, Enum):
    """Why a build was cancelled."""

    USER = "user"
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class ArtifactRecord:
    """Resolved metadata of a stored artifact."""

    handle: str
    build_id: str
    filename: str
    path: str
    size_bytes: int
    sha256: str
    created_at: datetime


__all__ = [
    "TERMINAL_BUILD_STATUSES",
    "ArtifactRecord",
    "BuildStatus",
    "CancelReason",
    "ErrorKind",
    "LogLevel",
    "SourceType",
    "StepName",
    "StepState",
]
