"""Configuration endpoints.

- GET /config - Effective server settings
- POST /config/validate - Check a build request without starting a build
"""

from typing import Any

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel

from ubuntu_autoinstaller.config import Settings
from ubuntu_autoinstaller.types import SourceType
from ubuntu_autoinstaller.userdata.render import render_user_data
from web.deps import get_app_settings
from web.routers.build import parse_build_request

router = APIRouter()


class ValidateRequestResponse(BaseModel):
    """Summary of a valid build request and the user-data it renders to."""

    valid: bool = True
    source_type: SourceType
    source_iso: str | None
    code_name: str | None
    destination_iso: str
    packages: list[str]
    user_data: str


@router.get("")
def get_config(settings: Settings = Depends(get_app_settings)) -> dict[str, Any]:
    """Get effective configuration.

    Returns:
        Current configuration as JSON.
    """
    return {
        "work_dir": str(settings.work_dir),
        "source_cache_dir": str(settings.source_cache_dir),
        "artifacts_dir": str(settings.artifacts_dir),
        "uploads_dir": str(settings.uploads_dir),
        "db_url": settings.db_url,
        "log_level": settings.log_level,
        "ubuntu_mirror": settings.ubuntu_mirror,
        "max_concurrent_builds": settings.max_concurrent_builds,
        "build_timeout": settings.build_timeout,
        "command_timeout": settings.command_timeout,
        "download_timeout": settings.download_timeout,
        "retention_hours": settings.retention_hours,
        "max_upload_bytes": settings.max_upload_bytes,
    }


@router.post("/validate", response_model=ValidateRequestResponse)
def validate_request(
    payload: dict[str, Any] = Body(..., description="Build request"),
) -> ValidateRequestResponse:
    """Validate a build request and preview its user-data.

    Nothing is queued; the same checks run as for POST /build/start.

    Raises:
        HTTPException: 422 if the request is invalid.
    """
    request = parse_build_request(payload)
    return ValidateRequestResponse(
        source_type=request.source_type,
        source_iso=request.source_iso,
        code_name=request.code_name,
        destination_iso=request.destination_iso,
        packages=request.packages,
        user_data=render_user_data(request),
    )
