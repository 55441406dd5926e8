"""Cache key computation for builds.

This module handles:
- The composite build key (toolchain, unit, feature set, deps-only, platform)
- Fingerprinting of inputs the key names only indirectly (toolchain
  manifest, lockfile)
- Deterministic hash computation over the normalized key

Keys with identical inputs always produce identical digests, so the
dependency cache is content-addressed by them.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"

LOCKFILE_NAME = "Cargo.lock"


@dataclass(frozen=True)
class BuildKey:
    """Composite key addressing one build graph execution.

    Attributes:
        toolchain: Toolchain name.
        unit: Build unit name.
        feature_set: Feature set name.
        deps_only: Whether only the dependency closure is built.
        platform: Platform name (final binaries only, None for deps).
        fingerprint: Digests of inputs the names stand for.
    """

    toolchain: str
    unit: str
    feature_set: str
    deps_only: bool = False
    platform: str | None = None
    fingerprint: tuple[tuple[str, str], ...] = field(default=(), compare=False)

    @classmethod
    def for_deps(
        cls,
        toolchain: str,
        unit: str,
        feature_set: str,
        fingerprint: dict[str, str] | None = None,
    ) -> BuildKey:
        """Key of a dependency-only artifact: (toolchain, unit, feature set)."""
        return cls(
            toolchain=toolchain,
            unit=unit,
            feature_set=feature_set,
            deps_only=True,
            fingerprint=tuple(sorted((fingerprint or {}).items())),
        )

    @property
    def label(self) -> str:
        """Human-readable ``(toolchain, unit, feature set[, platform])`` label."""
        parts = [self.toolchain, self.unit, self.feature_set]
        if self.deps_only:
            parts.append("deps")
        elif self.platform:
            parts.append(self.platform)
        return "(" + ", ".join(parts) + ")"

    def context(self) -> dict[str, str]:
        """Error context naming the matrix cell."""
        ctx = {
            "toolchain": self.toolchain,
            "unit": self.unit,
            "feature_set": self.feature_set,
        }
        if self.platform:
            ctx["platform"] = self.platform
        return ctx

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["fingerprint"] = dict(self.fingerprint)
        data["schema_version"] = CACHE_KEY_SCHEMA_VERSION
        return data


def compute_cache_key(key: BuildKey) -> str:
    """Compute the digest of a build key.

    The digest is a SHA-256 hash of the canonical JSON representation
    of the key, fingerprint included.

    Args:
        key: BuildKey instance.

    Returns:
        Hex digest.
    """
    canonical_json = json.dumps(
        key.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def lockfile_digest(workspace_dir: Path) -> str | None:
    """Return the SHA-256 of the workspace lockfile, or None if absent."""
    lockfile = workspace_dir / LOCKFILE_NAME
    if not lockfile.is_file():
        return None
    return hashlib.sha256(lockfile.read_bytes()).hexdigest()


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "LOCKFILE_NAME",
    "BuildKey",
    "compute_cache_key",
    "lockfile_digest",
]
