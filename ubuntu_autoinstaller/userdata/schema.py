"""Pydantic models for build request validation.

A build request pairs the autoinstall configuration (either pre-rendered
cloud-init user-data or a structured ``autoinstall`` document) with the
source image reference and the pipeline switches. Requests are validated
here, before a build job exists; a failing request never reaches the
orchestrator.
"""

import re
from pathlib import Path
from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ubuntu_autoinstaller.types import SourceType

Codename = Literal["focal", "jammy", "noble"]
SUPPORTED_CODENAMES: tuple[str, ...] = get_args(Codename)

# Package names as accepted by apt (see Debian policy 5.6.1)
PACKAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9+.\-]+$")


class BuildRequestError(ValueError):
    """Raised when a build request cannot be accepted."""

    def __init__(self, message: str, code: str = "validation") -> None:
        super().__init__(message)
        self.code = code


class BuildRequest(BaseModel):
    """Schema for a build submission.

    Attributes:
        source_type: ``download`` an official ISO or use a ``local`` one.
        source_iso: Upload handle (or host path) of the local ISO.
        code_name: Ubuntu release codename (required for downloads).
        destination_iso: File name of the produced ISO.
        user_data: Pre-rendered cloud-init user-data text.
        autoinstall: Structured autoinstall document to render.
        packages: Extra packages to bundle for offline installation.
        use_hwe_kernel: Boot the HWE kernel when the ISO ships one.
        md5_checksum: Refresh md5sum.txt for modified boot files.
        gpg_verify: Verify the downloaded ISO against signed SHA256SUMS.
        checksum_output: Write a SHA-256 sidecar for the produced ISO.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    source_type: SourceType = Field(description="Source of the base ISO")
    source_iso: str | None = Field(
        default=None, description="Upload handle or path of a local ISO"
    )
    code_name: Codename | None = Field(
        default=None, description="Ubuntu release codename"
    )
    destination_iso: str = Field(
        default="ubuntu-autoinstall.iso",
        description="File name of the produced ISO",
    )
    user_data: str | None = Field(
        default=None, description="Rendered cloud-init user-data"
    )
    autoinstall: dict[str, Any] | None = Field(
        default=None, description="Structured autoinstall document"
    )
    packages: list[str] = Field(
        default_factory=list, description="Extra packages to bundle"
    )
    use_hwe_kernel: bool = Field(default=False)
    md5_checksum: bool = Field(default=True)
    gpg_verify: bool = Field(default=True)
    checksum_output: bool = Field(default=True)

    @field_validator("destination_iso")
    @classmethod
    def validate_destination_iso(cls, v: str) -> str:
        """Validate the output is a bare ``.iso`` file name."""
        if not v.endswith(".iso"):
            raise ValueError("destination_iso must end with .iso extension")
        if Path(v).name != v or v in (".iso",):
            raise ValueError("destination_iso must be a file name, not a path")
        return v

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: list[str]) -> list[str]:
        """Drop blank and comment entries, then validate package names."""
        cleaned: list[str] = []
        for entry in v:
            name = entry.strip()
            if not name or name.startswith("#"):
                continue
            if not PACKAGE_NAME_PATTERN.match(name):
                raise ValueError(f"invalid package name: {name!r}")
            cleaned.append(name)
        return cleaned

    @model_validator(mode="after")
    def validate_source(self) -> "BuildRequest":
        """Validate source fields against the source type."""
        if self.source_type == SourceType.LOCAL and not self.source_iso:
            raise ValueError("source_iso is required when source_type is 'local'")
        if self.source_type == SourceType.DOWNLOAD and not self.code_name:
            raise ValueError("code_name is required when source_type is 'download'")
        return self

    @model_validator(mode="after")
    def validate_user_data_source(self) -> "BuildRequest":
        """Require exactly one of user_data / autoinstall."""
        if (self.user_data is None) == (self.autoinstall is None):
            raise ValueError("exactly one of user_data or autoinstall is required")
        return self


def validate_build_request(data: dict[str, Any]) -> BuildRequest:
    """Validate a raw build submission.

    Runs schema validation and then checks that the user-data renders to
    a document with an ``autoinstall`` section.

    Args:
        data: Raw request data (JSON body or loaded YAML).

    Returns:
        Validated BuildRequest.

    Raises:
        pydantic.ValidationError: If the schema is violated.
        BuildRequestError: If the user-data is unusable.
    """
    from ubuntu_autoinstaller.userdata.render import UserDataError, render_user_data

    request = BuildRequest.model_validate(data)
    try:
        render_user_data(request)
    except UserDataError as e:
        raise BuildRequestError(str(e)) from e
    return request


__all__ = [
    "PACKAGE_NAME_PATTERN",
    "SUPPORTED_CODENAMES",
    "BuildRequest",
    "BuildRequestError",
    "Codename",
    "validate_build_request",
]
