"""Shared type definitions for buildmatrix.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class ToolchainName(str, Enum):
    """Fixed enumeration of resolvable toolchains."""

    STABLE = "stable"
    NIGHTLY = "nightly"
    MSRV = "msrv"


class ToolchainState(str, Enum):
    """State of a resolved toolchain in the cache."""

    PENDING = "pending"
    READY = "ready"
    BROKEN = "broken"


class BuildStatus(str, Enum):
    """Status of a build operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BuildKind(str, Enum):
    """What a build graph execution produces."""

    BINARY = "binary"
    LINT = "lint"


class CheckKind(str, Enum):
    """Kinds of non-compilation checks."""

    AUDIT = "audit"
    DENY = "deny"
    FMT = "fmt"
    CLIPPY = "clippy"


class CheckStatus(str, Enum):
    """Outcome of a single check."""

    PASSED = "passed"
    FAILED = "failed"


class PackagerKind(str, Enum):
    """Packaging convention of a platform."""

    IDENTITY = "identity"
    JET = "jet"


@dataclass
class ArtifactInfo:
    """Information about a build artifact."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "BuildKind",
    "BuildStatus",
    "CheckKind",
    "CheckStatus",
    "PackagerKind",
    "ToolchainName",
    "ToolchainState",
]
