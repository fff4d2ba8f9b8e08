"""Build orchestration and status reporting.

This module handles:
- Build job snapshots and their state machine
- The in-memory build registry
- Step executors and the step plan
- Background orchestration with cancellation and deadlines
- Status, log and artifact queries for polling clients
"""

from ubuntu_autoinstaller.builds.models import (
    BuildError,
    BuildJob,
    InvalidTransitionError,
    LogLine,
    StepRecord,
)
from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator
from ubuntu_autoinstaller.builds.plan import StepSpec, default_plan
from ubuntu_autoinstaller.builds.registry import (
    BuildNotFoundError,
    BuildRegistry,
    BuildRegistryError,
    BuildStillActiveError,
)
from ubuntu_autoinstaller.builds.runner import (
    StepCancelledError,
    StepContext,
    StepExecutor,
    StepFailedError,
    StepResult,
)
from ubuntu_autoinstaller.builds.status import (
    ArtifactUnavailableError,
    BuildNotReadyError,
    BuildStatusView,
    LogsView,
    StatusReporter,
)

__all__ = [
    "ArtifactUnavailableError",
    "BuildError",
    "BuildJob",
    "BuildNotFoundError",
    "BuildNotReadyError",
    "BuildOrchestrator",
    "BuildRegistry",
    "BuildRegistryError",
    "BuildStatusView",
    "BuildStillActiveError",
    "InvalidTransitionError",
    "LogLine",
    "LogsView",
    "StatusReporter",
    "StepCancelledError",
    "StepContext",
    "StepExecutor",
    "StepFailedError",
    "StepRecord",
    "StepResult",
    "StepSpec",
    "default_plan",
]
