"""Artifact catalog ORM models.

This module defines the Artifact and SourceUpload models. Build jobs
themselves live in memory only; the catalog lets the retention sweep find
stored files after a restart.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ubuntu_autoinstaller.db import Base


class Artifact(Base):
    """ORM model for a produced ISO.

    Attributes:
        id: Primary key.
        handle: Opaque handle used to resolve the artifact.
        build_id: Id of the build that produced it.
        filename: File name offered for download.
        path: Absolute path of the stored file.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
        created_at: Time the artifact was stored (UTC).
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handle: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    build_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)

    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(handle='{self.handle}', build_id='{self.build_id}', "
            f"filename='{self.filename}')>"
        )


class SourceUpload(Base):
    """ORM model for an uploaded source ISO.

    Attributes:
        id: Primary key.
        handle: Opaque handle referenced by ``source_iso`` in build requests.
        filename: Original file name (used to derive the release).
        path: Absolute path of the stored file.
        size_bytes: File size in bytes.
        created_at: Upload time (UTC).
    """

    __tablename__ = "source_uploads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handle: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(1024), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        """Return string representation of SourceUpload."""
        return f"<SourceUpload(handle='{self.handle}', filename='{self.filename}')>"


__all__ = ["Artifact", "SourceUpload"]
