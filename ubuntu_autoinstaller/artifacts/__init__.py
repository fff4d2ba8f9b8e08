"""Artifact storage and catalog.

This module handles:
- Atomic storage of produced ISOs
- Handle resolution for downloads
- Uploaded source images
- Retention sweeps
"""

from ubuntu_autoinstaller.artifacts.store import (
    ArtifactNotFoundError,
    ArtifactStore,
    ArtifactStoreError,
    UploadError,
    UploadNotFoundError,
    UploadRecord,
)

__all__ = [
    "ArtifactNotFoundError",
    "ArtifactStore",
    "ArtifactStoreError",
    "UploadError",
    "UploadNotFoundError",
    "UploadRecord",
]
