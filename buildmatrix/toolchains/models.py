"""Toolchain ORM model.

This module defines the ToolchainRecord model, the persisted
resolved-toolchain cache keyed by toolchain name.
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from buildmatrix.db import Base
from buildmatrix.types import ToolchainState


class ToolchainRecord(Base):
    """ORM model for resolved toolchains.

    Each record points at a content-addressed install root holding the
    host tools and every standard library the registered platforms need.

    Attributes:
        id: Primary key.
        name: Toolchain name (stable, nightly, msrv).
        channel: Rust release channel the toolchain was resolved from.
        manifest_sha256: Checksum of the channel manifest used.
        root_dir: Install root.
        components: JSON list of ``component@target`` labels.
        targets: JSON list of target triples with a standard library.
        state: Current state (pending, ready, broken).
        resolved_at: Timestamp of the last install.
        last_used_at: Timestamp of the most recent resolution.
    """

    __tablename__ = "toolchains"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    channel: Mapped[str] = mapped_column(String(50), nullable=False)

    manifest_sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    root_dir: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    components: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    targets: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)

    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ToolchainState.PENDING.value
    )

    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        """Return string representation of ToolchainRecord."""
        return (
            f"<ToolchainRecord(id={self.id}, name='{self.name}', "
            f"channel='{self.channel}', state='{self.state}')>"
        )

    def mark_ready(self) -> None:
        """Mark this toolchain as ready for use."""
        self.state = ToolchainState.READY.value

    def mark_broken(self) -> None:
        """Mark this toolchain as broken."""
        self.state = ToolchainState.BROKEN.value

    def is_ready(self) -> bool:
        """Check if this toolchain is ready for use."""
        return self.state == ToolchainState.READY.value


__all__ = ["ToolchainRecord"]
