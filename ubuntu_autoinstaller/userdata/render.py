"""Cloud-init user-data rendering.

Turns a build request into the ``user-data`` file consumed by Subiquity's
NoCloud datasource. Rendering itself is intentionally thin: structured
documents are serialized as-is, pre-rendered text is checked and passed
through.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import yaml

if TYPE_CHECKING:
    from ubuntu_autoinstaller.userdata.schema import BuildRequest

CLOUD_CONFIG_HEADER = "#cloud-config\n"


class UserDataError(ValueError):
    """Raised when user-data cannot be rendered or is invalid."""

    def __init__(self, message: str, code: str = "invalid_user_data") -> None:
        super().__init__(message)
        self.code = code


def validate_user_data(text: str) -> dict[str, Any]:
    """Check that user-data is YAML with an ``autoinstall`` section.

    Args:
        text: User-data content.

    Returns:
        The parsed document.

    Raises:
        UserDataError: If the content is empty, not YAML, or incomplete.
    """
    if not text.strip():
        raise UserDataError("user-data must not be empty")

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise UserDataError(f"invalid YAML syntax: {e}") from e

    if not isinstance(document, dict):
        raise UserDataError("user-data must be a YAML mapping")
    if "autoinstall" not in document:
        raise UserDataError("missing required 'autoinstall' field")
    return document


def render_user_data(request: BuildRequest) -> str:
    """Render the user-data file for a request.

    Args:
        request: Validated build request.

    Returns:
        User-data text starting with the ``#cloud-config`` header.

    Raises:
        UserDataError: If the result is not a valid autoinstall document.
    """
    if request.user_data is not None:
        text = request.user_data
        if not text.startswith("#cloud-config"):
            text = CLOUD_CONFIG_HEADER + text
    else:
        body = yaml.safe_dump(
            {"autoinstall": request.autoinstall},
            sort_keys=False,
            default_flow_style=False,
        )
        text = CLOUD_CONFIG_HEADER + body

    validate_user_data(text)
    return text


__all__ = [
    "CLOUD_CONFIG_HEADER",
    "UserDataError",
    "render_user_data",
    "validate_user_data",
]
