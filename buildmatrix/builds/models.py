"""Build ORM models.

This module defines the BuildRecord and Artifact models for storing
final build and lint executions and their output files in the database.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from buildmatrix.db import Base
from buildmatrix.types import BuildKind, BuildStatus


class BuildRecord(Base):
    """ORM model for build execution records.

    A BuildRecord captures a single build graph execution for one cell of
    the matrix: toolchain, unit, feature set and platform.

    Attributes:
        id: Primary key.
        toolchain: Toolchain name.
        unit: Build unit name.
        feature_set: Feature set name.
        platform: Platform name.
        kind: What was produced (binary, lint).
        status: Build status (pending, running, succeeded, failed).
        requested_at: Timestamp when build was requested.
        started_at: Timestamp when build started executing.
        finished_at: Timestamp when build finished.
        key_snapshot: JSON representation of the build key.
        cache_key: Digest of the build key.
        deps_cache_key: Digest of the dependency artifact used, if any.
        build_dir: Path to working directory.
        log_path: Path to build log file.
        error_type: Type of error if build failed.
        error_message: Error message if build failed.
        is_cache_hit: Whether the dependency artifact was reused.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Matrix cell
    toolchain: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    unit: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    feature_set: Mapped[str] = mapped_column(String(500), nullable=False)
    platform: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildKind.BINARY.value
    )

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Cache keys
    key_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    cache_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    deps_cache_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Build paths
    build_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)

    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact", back_populates="build", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_build_records_cell", "toolchain", "unit", "feature_set", "platform"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, unit='{self.unit}', "
            f"toolchain='{self.toolchain}', feature_set='{self.feature_set}', "
            f"status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


class Artifact(Base):
    """ORM model for build output files.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        kind: Type of artifact (binary, package, manifest, log).
        relative_path: Path relative to artifacts root.
        absolute_path: Full filesystem path.
        filename: Artifact filename.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
        labels: JSON array of labels.
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )

    kind: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    relative_path: Mapped[str] = mapped_column(String(500), nullable=False)
    absolute_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)

    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    labels: Mapped[list[str] | None] = mapped_column(JSON, nullable=True, default=list)

    build: Mapped["BuildRecord"] = relationship(
        "BuildRecord", back_populates="artifacts"
    )

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(id={self.id}, filename='{self.filename}', "
            f"kind='{self.kind}', size={self.size_bytes})>"
        )


__all__ = ["Artifact", "BuildRecord"]
