"""Source image upload endpoints.

- POST /iso/upload - Upload a source ISO for a local build
"""

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi import status as http_status
from pydantic import BaseModel

from ubuntu_autoinstaller.artifacts.store import ArtifactStore, UploadError
from web.deps import get_store

router = APIRouter()


class UploadResponse(BaseModel):
    """Handle of a stored source image."""

    source_handle: str
    filename: str
    size_bytes: int


@router.post(
    "/upload",
    status_code=http_status.HTTP_201_CREATED,
    response_model=UploadResponse,
)
def upload_iso(
    file: UploadFile = File(..., description="Ubuntu live-server ISO"),
    store: ArtifactStore = Depends(get_store),
) -> UploadResponse:
    """Store an uploaded source ISO.

    The returned handle is passed as ``source_iso`` of a local build.

    Raises:
        HTTPException: 400 for a non-ISO or empty file, 413 if too large.
    """
    try:
        record = store.save_upload(file.filename or "", file.file)
    except UploadError as e:
        status_code = (
            http_status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
            if e.code == "upload_too_large"
            else http_status.HTTP_400_BAD_REQUEST
        )
        raise HTTPException(
            status_code=status_code,
            detail={"code": e.code, "message": str(e)},
        ) from None
    finally:
        file.file.close()

    return UploadResponse(
        source_handle=record.handle,
        filename=record.filename,
        size_bytes=record.size_bytes,
    )
