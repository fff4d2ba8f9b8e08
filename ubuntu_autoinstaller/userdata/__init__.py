"""Build request validation and user-data rendering.

This module handles:
- Build request schema (source image, switches, packages)
- Validation before a job is created
- Rendering cloud-init user-data for the NoCloud datasource
"""

from ubuntu_autoinstaller.userdata.render import (
    UserDataError,
    render_user_data,
    validate_user_data,
)
from ubuntu_autoinstaller.userdata.schema import (
    BuildRequest,
    BuildRequestError,
    validate_build_request,
)

__all__ = [
    "BuildRequest",
    "BuildRequestError",
    "UserDataError",
    "render_user_data",
    "validate_build_request",
    "validate_user_data",
]
