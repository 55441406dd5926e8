"""Artifact discovery and manifest generation.

This module handles:
- Locating the compiled binary in a cargo target directory
- Copying it into the artifacts store
- Computing checksums
- Generating build manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from buildmatrix.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

MANIFEST_FILENAME = "manifest.json"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def binary_path(
    target_dir: Path,
    bin_name: str,
    target: str | None = None,
    profile: str = "release",
) -> Path:
    """Return where cargo places a binary.

    Cross builds nest the profile directory under the target triple.
    """
    base = target_dir / target if target else target_dir
    return base / profile / bin_name


def collect_binary(
    target_dir: Path,
    bin_name: str,
    dest_dir: Path,
    target: str | None = None,
    artifacts_root: Path | None = None,
) -> ArtifactInfo | None:
    """Copy a compiled binary out of a target directory.

    Args:
        target_dir: Cargo target directory of the build.
        bin_name: Binary name.
        dest_dir: Directory to copy the binary into.
        target: Target triple for cross builds.
        artifacts_root: Root directory for computing relative paths.
                        If None, uses dest_dir.

    Returns:
        ArtifactInfo for the copied binary, or None if it was not produced.
    """
    source = binary_path(target_dir, bin_name, target)
    if not source.is_file():
        logger.warning("Build produced no binary at %s", source)
        return None

    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / bin_name
    shutil.copy2(source, dest)

    root = artifacts_root or dest_dir
    try:
        relative_path = dest.relative_to(root).as_posix()
    except ValueError:
        relative_path = dest.name

    artifact = ArtifactInfo(
        filename=dest.name,
        relative_path=relative_path,
        size_bytes=dest.stat().st_size,
        sha256=compute_file_hash(dest),
        kind="binary",
        labels=[target] if target else [],
    )
    logger.info(
        "Collected binary %s (size=%d, sha256=%s)",
        dest,
        artifact.size_bytes,
        artifact.sha256[:16],
    )
    return artifact


def generate_manifest(
    artifacts: list[ArtifactInfo],
    build_id: int | None = None,
    cache_key: str | None = None,
    key: dict[str, Any] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    The manifest contains:
    - List of artifacts with metadata
    - Build identification (ID, cache key, key fields)
    - Timestamps
    - Optional extra metadata

    Args:
        artifacts: List of collected artifacts.
        build_id: Optional database build ID.
        cache_key: Optional cache key digest.
        key: Optional build key dictionary.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if build_id is not None:
        manifest["build_id"] = build_id
    if cache_key:
        manifest["cache_key"] = cache_key
    if key:
        manifest["key"] = key
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
    }

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_FILENAME",
    "binary_path",
    "collect_binary",
    "compute_file_hash",
    "generate_manifest",
    "write_manifest",
]
