"""Build listing endpoints.

- GET /builds - List known builds, newest first
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status

from ubuntu_autoinstaller.builds.status import BuildStatusView, StatusReporter
from ubuntu_autoinstaller.types import BuildStatus
from web.deps import get_reporter

router = APIRouter()


@router.get("", response_model=list[BuildStatusView])
def list_builds_endpoint(
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    reporter: StatusReporter = Depends(get_reporter),
) -> list[BuildStatusView]:
    """List builds held in the registry.

    Args:
        status: Filter by status.
        limit: Maximum results.
        reporter: Status reporter.

    Returns:
        Status views of matching builds.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in BuildStatus)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: {valid}",
                },
            ) from None

    return reporter.list_builds(status=status_filter, limit=limit)
