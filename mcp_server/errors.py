"""Structured errors returned by the MCP tools.

Tools never raise to the client. Every failure becomes an MCPError whose
code is one of the constants below; the same codes appear in the HTTP
API's error bodies so clients can share their handling.
"""

from dataclasses import dataclass
from typing import Any

from ubuntu_autoinstaller.builds.registry import BuildNotFoundError
from ubuntu_autoinstaller.builds.status import ArtifactUnavailableError, BuildNotReadyError
from ubuntu_autoinstaller.types import BuildStatus

VALIDATION_ERROR = "validation"
BUILD_NOT_FOUND = "build_not_found"
BUILD_NOT_READY = "build_not_ready"
ARTIFACT_NOT_FOUND = "artifact_not_found"
INTERNAL_ERROR = "internal_error"


@dataclass
class MCPError:
    """Error payload carried in a tool response's ``error`` field.

    Attributes:
        code: Stable error code.
        message: Human-readable error message.
        details: Build id, status or validation errors, when known.
    """

    code: str
    message: str
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            result["details"] = self.details
        return result


def make_error(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> MCPError:
    return MCPError(code=code, message=message, details=details)


def validation_error(message: str, details: dict[str, Any] | None = None) -> MCPError:
    """Create a validation error."""
    return make_error(VALIDATION_ERROR, message, details)


def build_not_found(build_id: str) -> MCPError:
    """Create an error for a build id the registry does not know."""
    return make_error(
        BUILD_NOT_FOUND,
        f"Build not found: {build_id}",
        details={"build_id": build_id},
    )


def build_not_ready(message: str, status: BuildStatus) -> MCPError:
    """Create an error for a build that has not finished yet."""
    return make_error(BUILD_NOT_READY, message, details={"status": status.value})


def artifact_unavailable(message: str, status: BuildStatus) -> MCPError:
    """Create an error for a finished build without a stored ISO."""
    return make_error(ARTIFACT_NOT_FOUND, message, details={"status": status.value})


def error_from_exception(exc: Exception, build_id: str | None = None) -> MCPError:
    """Translate an exception raised by the build services.

    Known lookup failures keep their stable codes; anything else is
    reported as an internal error carrying the exception text.

    Args:
        exc: Exception raised while serving a tool call.
        build_id: Build the call was about, if any.

    Returns:
        MCPError for the tool response.
    """
    if isinstance(exc, BuildNotFoundError):
        return build_not_found(build_id if build_id is not None else exc.build_id)
    if isinstance(exc, BuildNotReadyError):
        return build_not_ready(str(exc), exc.status)
    if isinstance(exc, ArtifactUnavailableError):
        return artifact_unavailable(str(exc), exc.status)
    return make_error(INTERNAL_ERROR, str(exc))


__all__ = [
    "ARTIFACT_NOT_FOUND",
    "BUILD_NOT_FOUND",
    "BUILD_NOT_READY",
    "INTERNAL_ERROR",
    "MCPError",
    "VALIDATION_ERROR",
    "artifact_unavailable",
    "build_not_found",
    "build_not_ready",
    "error_from_exception",
    "make_error",
    "validation_error",
]
