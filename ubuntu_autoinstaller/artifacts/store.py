"""Artifact storage.

This module handles:
- Moving finished ISOs into the artifacts directory atomically
- Resolving artifact handles to files
- Accepting uploaded source ISOs
- The retention sweep for old artifacts, uploads and finished jobs

Files are staged under ``<artifacts_dir>/.incoming`` and only renamed to
``<artifacts_dir>/<handle>/<filename>`` once fully written and synced. The
catalog row is inserted after the rename, so a resolvable handle always
points at a complete file.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from sqlalchemy import select

from ubuntu_autoinstaller.artifacts.models import Artifact, SourceUpload
from ubuntu_autoinstaller.db import get_session
from ubuntu_autoinstaller.types import ArtifactRecord

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from ubuntu_autoinstaller.builds.registry import BuildRegistry

logger = logging.getLogger(__name__)

ARTIFACT_HANDLE_PREFIX = "art_"
UPLOAD_HANDLE_PREFIX = "src_"
INCOMING_DIR = ".incoming"

# Default chunk size for copying and hashing
COPY_CHUNK_SIZE = 1024 * 1024  # 1 MB


class ArtifactStoreError(Exception):
    """Raised when the store cannot complete an operation."""

    def __init__(self, message: str, code: str = "artifact_store_error") -> None:
        super().__init__(message)
        self.code = code


class ArtifactNotFoundError(ArtifactStoreError):
    """Raised when a handle is unknown or its file is gone."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"Artifact not found: {handle}", code="artifact_not_found")
        self.handle = handle


class UploadError(ArtifactStoreError):
    """Raised when an uploaded source image is rejected."""

    def __init__(self, message: str, code: str = "invalid_upload") -> None:
        super().__init__(message, code=code)


class UploadNotFoundError(ArtifactStoreError):
    """Raised when a source handle is unknown or its file is gone."""

    def __init__(self, handle: str) -> None:
        super().__init__(f"Source image not found: {handle}", code="source_not_found")
        self.handle = handle


@dataclass(frozen=True)
class UploadRecord:
    """Stored source image."""

    handle: str
    filename: str
    path: Path
    size_bytes: int
    created_at: datetime


def _utcnow() -> datetime:
    # SQLite drops tzinfo; the catalog stores naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _fsync_path(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _file_sha256(path: Path) -> str:
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(COPY_CHUNK_SIZE):
            sha256.update(chunk)
    return sha256.hexdigest()


def _to_record(row: Artifact) -> ArtifactRecord:
    return ArtifactRecord(
        handle=row.handle,
        build_id=row.build_id,
        filename=row.filename,
        path=row.path,
        size_bytes=row.size_bytes,
        sha256=row.sha256,
        created_at=_aware(row.created_at),
    )


class ArtifactStore:
    """Durable storage for produced ISOs and uploaded source images.

    Args:
        artifacts_dir: Root directory for stored artifacts.
        uploads_dir: Root directory for uploaded source images.
        session_factory: SQLAlchemy session factory for the catalog.
        max_upload_bytes: Size limit for uploads.
    """

    def __init__(
        self,
        artifacts_dir: Path,
        uploads_dir: Path,
        session_factory: sessionmaker[Session],
        max_upload_bytes: int = 10 * 1024**3,
    ) -> None:
        self.artifacts_dir = artifacts_dir
        self.uploads_dir = uploads_dir
        self.max_upload_bytes = max_upload_bytes
        self._session_factory = session_factory

    @property
    def incoming_dir(self) -> Path:
        return self.artifacts_dir / INCOMING_DIR

    def store(
        self,
        temp_location: Path,
        build_id: str,
        expected_sha256: str | None = None,
    ) -> str:
        """Move a finished file into the store.

        The file is renamed when it lives on the same filesystem as the
        store and copied otherwise.

        Args:
            temp_location: File produced by the build.
            build_id: Owning build.
            expected_sha256: Digest the stored copy must match.

        Returns:
            Handle of the new artifact.

        Raises:
            ArtifactStoreError: If the file cannot be stored.
        """
        if not temp_location.is_file():
            raise ArtifactStoreError(f"Build output not found: {temp_location}")

        handle = f"{ARTIFACT_HANDLE_PREFIX}{uuid.uuid4().hex}"
        filename = temp_location.name
        part_path = self.incoming_dir / f"{handle}.part"
        final_dir = self.artifacts_dir / handle
        final_path = final_dir / filename

        try:
            self.incoming_dir.mkdir(parents=True, exist_ok=True)
            if temp_location.stat().st_dev == self.incoming_dir.stat().st_dev:
                os.replace(temp_location, part_path)
            else:
                logger.debug("Copying %s across filesystems", temp_location)
                shutil.copyfile(temp_location, part_path)
            _fsync_path(part_path)

            sha256 = _file_sha256(part_path)
            if expected_sha256 and sha256 != expected_sha256.lower():
                raise ArtifactStoreError(
                    f"Checksum mismatch for {filename}: "
                    f"expected {expected_sha256}, got {sha256}",
                    code="checksum_mismatch",
                )
            size_bytes = part_path.stat().st_size

            final_dir.mkdir(parents=True, exist_ok=False)
            os.replace(part_path, final_path)
            _fsync_path(final_dir)

            with get_session(self._session_factory) as session:
                session.add(
                    Artifact(
                        handle=handle,
                        build_id=build_id,
                        filename=filename,
                        path=str(final_path),
                        size_bytes=size_bytes,
                        sha256=sha256,
                        created_at=_utcnow(),
                    )
                )
        except ArtifactStoreError:
            self._discard(part_path, final_dir)
            raise
        except Exception as e:
            self._discard(part_path, final_dir)
            raise ArtifactStoreError(f"Failed to store {filename}: {e}") from e

        logger.info(
            "Stored artifact %s for build %s (%d bytes)", handle, build_id, size_bytes
        )
        return handle

    def _discard(self, part_path: Path, final_dir: Path) -> None:
        part_path.unlink(missing_ok=True)
        if final_dir.exists():
            shutil.rmtree(final_dir, ignore_errors=True)

    def resolve(self, handle: str) -> ArtifactRecord:
        """Resolve a handle to artifact metadata.

        Raises:
            ArtifactNotFoundError: If the handle is unknown or its file is gone.
        """
        with get_session(self._session_factory) as session:
            row = session.execute(
                select(Artifact).where(Artifact.handle == handle)
            ).scalar_one_or_none()
            if row is None:
                raise ArtifactNotFoundError(handle)
            record = _to_record(row)

        if not Path(record.path).is_file():
            logger.warning("Artifact %s is cataloged but missing on disk", handle)
            raise ArtifactNotFoundError(handle)
        return record

    def list_artifacts(self) -> list[ArtifactRecord]:
        """List cataloged artifacts, newest first."""
        with get_session(self._session_factory) as session:
            rows = session.execute(
                select(Artifact).order_by(Artifact.created_at.desc())
            ).scalars()
            return [_to_record(row) for row in rows]

    def save_upload(self, filename: str, stream: BinaryIO) -> UploadRecord:
        """Store an uploaded source ISO.

        Args:
            filename: Client-supplied file name; only the base name is kept.
            stream: Binary file object to read from.

        Returns:
            UploadRecord with the new source handle.

        Raises:
            UploadError: If the file is not an ISO or exceeds the size limit.
        """
        name = Path(filename or "").name
        if not name.lower().endswith(".iso") or name.lower() == ".iso":
            raise UploadError("Only .iso files are accepted")

        handle = f"{UPLOAD_HANDLE_PREFIX}{uuid.uuid4().hex}"
        target_dir = self.uploads_dir / handle
        target_dir.mkdir(parents=True, exist_ok=False)
        part_path = target_dir / f"{name}.part"
        final_path = target_dir / name

        size_bytes = 0
        try:
            with part_path.open("wb") as f:
                while chunk := stream.read(COPY_CHUNK_SIZE):
                    size_bytes += len(chunk)
                    if size_bytes > self.max_upload_bytes:
                        raise UploadError(
                            f"Upload exceeds limit of {self.max_upload_bytes} bytes",
                            code="upload_too_large",
                        )
                    f.write(chunk)
                f.flush()
                os.fsync(f.fileno())
            if size_bytes == 0:
                raise UploadError("Uploaded file is empty")
            os.replace(part_path, final_path)

            created_at = _utcnow()
            with get_session(self._session_factory) as session:
                session.add(
                    SourceUpload(
                        handle=handle,
                        filename=name,
                        path=str(final_path),
                        size_bytes=size_bytes,
                        created_at=created_at,
                    )
                )
        except Exception:
            shutil.rmtree(target_dir, ignore_errors=True)
            raise

        logger.info("Stored upload %s (%s, %d bytes)", handle, name, size_bytes)
        return UploadRecord(
            handle=handle,
            filename=name,
            path=final_path,
            size_bytes=size_bytes,
            created_at=_aware(created_at),
        )

    def resolve_upload(self, handle: str) -> UploadRecord:
        """Resolve a source handle to the uploaded file.

        Raises:
            UploadNotFoundError: If the handle is unknown or its file is gone.
        """
        with get_session(self._session_factory) as session:
            row = session.execute(
                select(SourceUpload).where(SourceUpload.handle == handle)
            ).scalar_one_or_none()
            if row is None:
                raise UploadNotFoundError(handle)
            record = UploadRecord(
                handle=row.handle,
                filename=row.filename,
                path=Path(row.path),
                size_bytes=row.size_bytes,
                created_at=_aware(row.created_at),
            )

        if not record.path.is_file():
            raise UploadNotFoundError(handle)
        return record

    def retention_sweep(
        self,
        max_age: timedelta,
        registry: BuildRegistry | None = None,
        now: datetime | None = None,
        upload_grace: timedelta | None = timedelta(0),
    ) -> list[str]:
        """Delete artifacts and uploads older than max_age.

        When a registry is given, the terminal jobs owning swept artifacts
        are removed too, as are other terminal jobs past the retention
        period. Uploads referenced by active jobs are kept.

        Without a registry the store cannot tell which uploads running
        builds still read, so callers sharing the catalog with a server
        pass ``upload_grace``: uploads are kept that much longer than
        max_age, and are not swept at all when it is None.

        Returns:
            Handles of deleted artifacts and uploads.
        """
        current = now or datetime.now(timezone.utc)
        cutoff = _aware(current).replace(tzinfo=None) - max_age
        active_sources: set[str] = set()
        if registry is not None:
            active_sources = {
                job.config.source_iso
                for job in registry.list(limit=None)
                if not job.is_terminal and job.config.source_iso
            }

        removed: list[str] = []
        with get_session(self._session_factory) as session:
            artifacts = session.execute(
                select(Artifact).where(Artifact.created_at < cutoff)
            ).scalars().all()
            for artifact in artifacts:
                if registry is not None and artifact.build_id in registry:
                    job = registry.get(artifact.build_id)
                    if not job.is_terminal:
                        continue
                    registry.delete(artifact.build_id)
                shutil.rmtree(Path(artifact.path).parent, ignore_errors=True)
                session.delete(artifact)
                removed.append(artifact.handle)

            uploads: Sequence[SourceUpload] = []
            if upload_grace is not None:
                uploads = session.execute(
                    select(SourceUpload).where(
                        SourceUpload.created_at < cutoff - upload_grace
                    )
                ).scalars().all()
            for upload in uploads:
                if upload.handle in active_sources:
                    continue
                shutil.rmtree(Path(upload.path).parent, ignore_errors=True)
                session.delete(upload)
                removed.append(upload.handle)

        if registry is not None:
            pruned = registry.prune(max_age, now=_aware(current))
            if pruned:
                logger.info("Pruned %d finished builds", len(pruned))
        if removed:
            logger.info("Retention sweep removed %d stored files", len(removed))
        return removed


__all__ = [
    "ARTIFACT_HANDLE_PREFIX",
    "UPLOAD_HANDLE_PREFIX",
    "ArtifactNotFoundError",
    "ArtifactStore",
    "ArtifactStoreError",
    "UploadError",
    "UploadNotFoundError",
    "UploadRecord",
]
