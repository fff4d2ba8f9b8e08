"""The build step plan.

The plan is the fixed, ordered list of steps every build runs through.
Each entry pairs a step name with its executor and a predicate deciding
whether the step applies to a given request; steps that do not apply are
recorded as skipped.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from ubuntu_autoinstaller.builds.runner import StepExecutor
from ubuntu_autoinstaller.builds.steps import (
    AcquireSourceStep,
    ApplyConfigurationStep,
    ConfigureKernelStep,
    ExtractStep,
    FinalizeStep,
    InstallPackagesStep,
    PrepareStep,
    RepackageStep,
    VerifyStep,
)
from ubuntu_autoinstaller.types import SourceType, StepName

if TYPE_CHECKING:
    from ubuntu_autoinstaller.artifacts.store import ArtifactStore
    from ubuntu_autoinstaller.config import Settings
    from ubuntu_autoinstaller.userdata.schema import BuildRequest


def always(config: BuildRequest) -> bool:
    return True


def verify_enabled(config: BuildRequest) -> bool:
    return config.gpg_verify and config.source_type == SourceType.DOWNLOAD


def hwe_kernel_enabled(config: BuildRequest) -> bool:
    return config.use_hwe_kernel


def checksum_enabled(config: BuildRequest) -> bool:
    return config.checksum_output


@dataclass(frozen=True)
class StepSpec:
    """One entry of the step plan."""

    name: StepName
    executor: StepExecutor
    enabled_if: Callable[[BuildRequest], bool] = always


def step_names(plan: Sequence[StepSpec]) -> list[StepName]:
    return [spec.name for spec in plan]


def default_plan(
    settings: Settings,
    store: ArtifactStore | None = None,
    client_factory: Callable[[], httpx.Client] = httpx.Client,
) -> list[StepSpec]:
    """Build the standard ISO customization plan.

    Args:
        settings: Application settings (mirror, cache paths, keyserver).
        store: Store used to resolve uploaded source images.
        client_factory: Factory for HTTP clients used by downloads.

    Returns:
        Ordered step specs.
    """
    return [
        StepSpec(StepName.PREPARE, PrepareStep()),
        StepSpec(
            StepName.ACQUIRE_SOURCE,
            AcquireSourceStep(settings, store, client_factory=client_factory),
        ),
        StepSpec(
            StepName.VERIFY,
            VerifyStep(settings, client_factory=client_factory),
            enabled_if=verify_enabled,
        ),
        StepSpec(StepName.EXTRACT, ExtractStep()),
        StepSpec(StepName.APPLY_CONFIGURATION, ApplyConfigurationStep()),
        StepSpec(StepName.INSTALL_PACKAGES, InstallPackagesStep()),
        StepSpec(
            StepName.CONFIGURE_KERNEL,
            ConfigureKernelStep(),
            enabled_if=hwe_kernel_enabled,
        ),
        StepSpec(StepName.REPACKAGE, RepackageStep()),
        StepSpec(StepName.FINALIZE, FinalizeStep(), enabled_if=checksum_enabled),
    ]


__all__ = [
    "StepSpec",
    "always",
    "checksum_enabled",
    "default_plan",
    "hwe_kernel_enabled",
    "step_names",
    "verify_enabled",
]
