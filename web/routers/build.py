"""Build lifecycle endpoints.

- POST /build/start - Validate a request and launch a build
- GET /build/status/{id} - Build status and step states
- GET /build/logs/{id} - Log lines from an offset
- GET /build/logs/{id}/stream - Server-sent events log stream
- GET /build/download/{id} - Download the produced ISO
- POST /build/cancel/{id} - Request cancellation
"""

import json
from collections.abc import Iterator
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi import status as http_status
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel, ValidationError

from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator
from ubuntu_autoinstaller.builds.registry import BuildNotFoundError
from ubuntu_autoinstaller.builds.status import (
    ArtifactUnavailableError,
    BuildNotReadyError,
    BuildStatusView,
    LogsView,
    StatusReporter,
)
from ubuntu_autoinstaller.types import BuildStatus
from ubuntu_autoinstaller.userdata.schema import (
    BuildRequest,
    BuildRequestError,
    validate_build_request,
)
from web.deps import get_orchestrator, get_reporter

router = APIRouter()

ISO_MEDIA_TYPE = "application/x-iso9660-image"


class StartBuildResponse(BaseModel):
    """Response for an accepted build."""

    build_id: str
    status: BuildStatus


class CancelBuildResponse(BaseModel):
    """Response for a cancellation request."""

    build_id: str
    status: BuildStatus
    cancel_requested: bool


def _not_found(build_id: str) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "build_not_found",
            "message": f"Build not found: {build_id}",
        },
    )


def parse_build_request(payload: dict[str, Any]) -> BuildRequest:
    """Validate a raw build request.

    Raises:
        HTTPException: 422 with the validation errors if the request is invalid.
    """
    try:
        return validate_build_request(payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "validation",
                "message": "Invalid build request",
                "errors": json.loads(e.json(include_url=False)),
            },
        ) from None
    except BuildRequestError as e:
        raise HTTPException(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": e.code,
                "message": str(e),
                "errors": [{"loc": ["user_data"], "msg": str(e)}],
            },
        ) from None


@router.post(
    "/start",
    status_code=http_status.HTTP_202_ACCEPTED,
    response_model=StartBuildResponse,
)
def start_build(
    payload: dict[str, Any] = Body(..., description="Build request"),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> StartBuildResponse:
    """Validate a build request and launch the build.

    Args:
        payload: Raw build request.
        orchestrator: Build orchestrator.

    Returns:
        Id and status of the queued build.

    Raises:
        HTTPException: If the request is invalid.
    """
    request = parse_build_request(payload)
    job = orchestrator.start(request)
    return StartBuildResponse(build_id=job.id, status=job.status)


@router.get("/status/{build_id}", response_model=BuildStatusView)
def get_build_status(
    build_id: str,
    reporter: StatusReporter = Depends(get_reporter),
) -> BuildStatusView:
    """Get the status of a build.

    Raises:
        HTTPException: If build not found.
    """
    try:
        return reporter.get_status(build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None


@router.get("/logs/{build_id}", response_model=LogsView)
def get_build_logs(
    build_id: str,
    since: int = Query(0, ge=0, description="Offset of the first line to return"),
    reporter: StatusReporter = Depends(get_reporter),
) -> LogsView:
    """Get log lines of a build starting at an offset.

    Raises:
        HTTPException: If build not found.
    """
    try:
        return reporter.get_logs(build_id, since)
    except BuildNotFoundError:
        raise _not_found(build_id) from None


@router.get("/logs/{build_id}/stream")
def stream_build_logs(
    build_id: str,
    since: int = Query(0, ge=0, description="Offset of the first line to send"),
    reporter: StatusReporter = Depends(get_reporter),
) -> StreamingResponse:
    """Stream log lines as server-sent events until the build finishes.

    Raises:
        HTTPException: If build not found.
    """
    try:
        reporter.get_status(build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None

    def events() -> Iterator[str]:
        try:
            for line in reporter.iter_logs(build_id, since):
                yield f"id: {line.offset}\ndata: {line.format()}\n\n"
            status = reporter.get_status(build_id).status
        except BuildNotFoundError:
            return
        yield f"event: end\ndata: {status.value}\n\n"

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/download/{build_id}")
def download_build(
    build_id: str,
    reporter: StatusReporter = Depends(get_reporter),
) -> FileResponse:
    """Download the ISO produced by a completed build.

    Raises:
        HTTPException: 404 if the build or artifact is unknown, 409 if the
            build has not finished.
    """
    try:
        record = reporter.get_artifact(build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    except BuildNotReadyError as e:
        raise HTTPException(
            status_code=http_status.HTTP_409_CONFLICT,
            detail={"code": e.code, "message": str(e)},
        ) from None
    except ArtifactUnavailableError as e:
        raise HTTPException(
            status_code=http_status.HTTP_404_NOT_FOUND,
            detail={"code": e.code, "message": str(e)},
        ) from None

    return FileResponse(
        record.path,
        media_type=ISO_MEDIA_TYPE,
        filename=record.filename,
        headers={"X-Checksum-SHA256": record.sha256},
    )


@router.post(
    "/cancel/{build_id}",
    status_code=http_status.HTTP_202_ACCEPTED,
    response_model=CancelBuildResponse,
)
def cancel_build(
    build_id: str,
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> CancelBuildResponse:
    """Request cancellation of a build.

    Cancelling a finished build is a no-op that reports its final status.

    Raises:
        HTTPException: If build not found.
    """
    try:
        job = orchestrator.cancel(build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    return CancelBuildResponse(
        build_id=job.id,
        status=job.status,
        cancel_requested=job.cancel_requested,
    )
