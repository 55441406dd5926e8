"""Dependency-only artifact cache.

This module handles:
- Content-addressed storage of dependency-only target directories
- Single-flight deduplication per key, in-process (shared futures) and
  across processes (per-key file locks)
- Stubbed workspace copies whose compilation yields only the
  dependency closure

Entries are written once under a temporary name and published with an
atomic rename; a published entry is never modified. Failed builds leave
no entry behind, so the next request retries.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import threading
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from buildmatrix.builds.cache_key import BuildKey, compute_cache_key
from buildmatrix.locks import file_lock

logger = logging.getLogger(__name__)

ENTRY_FILENAME = "entry.json"
TARGET_DIRNAME = "target"

# Directories never copied out of a workspace
WORKSPACE_IGNORE = ("target", ".git", "result")

# Sources under these directories (or with these names) are binary roots
_BIN_DIRS = {"bin", "examples", "benches"}
_BIN_FILES = {"main.rs", "build.rs"}


@dataclass(frozen=True)
class DepsArtifact:
    """A cached dependency-only build.

    Attributes:
        key: Build key the artifact was produced for.
        digest: Content address of the key.
        path: Entry directory in the cache.
        created_at: ISO timestamp of creation.
    """

    key: BuildKey
    digest: str
    path: Path
    created_at: str

    @property
    def target_dir(self) -> Path:
        """Cargo target directory holding the compiled dependencies."""
        return self.path / TARGET_DIRNAME

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "key": self.key.to_dict(),
            "digest": self.digest,
            "path": str(self.path),
            "created_at": self.created_at,
        }


def _stub_source(path: Path) -> str:
    if path.name in _BIN_FILES or _BIN_DIRS.intersection(path.parts[:-1]):
        return "fn main() {}\n"
    return ""


def copy_workspace(source: Path, dest: Path, stub_sources: bool = False) -> Path:
    """Copy a workspace for an isolated build.

    With ``stub_sources`` every Rust source is replaced by an empty stub
    while manifests and the lockfile are kept, so compiling the copy
    builds only third-party dependencies. Without it every source is
    touched so cargo never mistakes it for up to date against a reused
    target directory.

    Args:
        source: Workspace root.
        dest: Destination directory (must not exist).
        stub_sources: Replace sources with stubs.

    Returns:
        The destination directory.
    """
    shutil.copytree(
        source,
        dest,
        symlinks=True,
        ignore=shutil.ignore_patterns(*WORKSPACE_IGNORE),
    )
    for path in dest.rglob("*.rs"):
        if not path.is_file() or path.is_symlink():
            continue
        if stub_sources:
            path.write_text(_stub_source(path.relative_to(dest)), encoding="utf-8")
        else:
            os.utime(path, None)
    return dest


def copy_target_dir(deps: DepsArtifact, dest: Path) -> Path:
    """Copy a cached target directory into a fresh per-build location."""
    shutil.copytree(deps.target_dir, dest, symlinks=True)
    return dest


class DependencyCache:
    """Single-flight, content-addressed cache of dependency-only builds.

    One in-flight computation exists per key digest: the first requester
    runs the build, concurrent requesters wait on the same future and
    share its result or its error. Different keys never contend.
    """

    def __init__(self, cache_dir: Path) -> None:
        self.root = cache_dir / "deps"
        self.lock_dir = cache_dir / ".locks"
        self._inflight: dict[str, Future[DepsArtifact]] = {}
        self._guard = threading.Lock()

    def entry_dir(self, digest: str) -> Path:
        return self.root / digest

    def lookup(self, key: BuildKey) -> DepsArtifact | None:
        """Return the published entry for a key, or None."""
        digest = compute_cache_key(key)
        entry_file = self.entry_dir(digest) / ENTRY_FILENAME
        if not entry_file.is_file():
            return None
        try:
            data = json.loads(entry_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable deps cache entry %s: %s", digest[:16], e)
            return None
        return DepsArtifact(
            key=key,
            digest=digest,
            path=self.entry_dir(digest),
            created_at=data.get("created_at", ""),
        )

    def get_or_build(
        self,
        key: BuildKey,
        builder: Callable[[Path], None],
    ) -> tuple[DepsArtifact, bool]:
        """Return the entry for a key, building it at most once.

        Args:
            key: Dependency-only build key.
            builder: Called with the target directory to populate on a miss.
                Must raise on failure.

        Returns:
            Tuple of (artifact, cache_hit). ``cache_hit`` is False only for
            the requester that ran the builder.

        Raises:
            Whatever the builder raised; waiters receive the same error.
        """
        digest = compute_cache_key(key)

        with self._guard:
            future = self._inflight.get(digest)
            owner = future is None
            if future is None:
                future = Future()
                self._inflight[digest] = future

        if not owner:
            logger.info("Waiting for in-flight deps build %s", key.label)
            return future.result(), True

        try:
            artifact, hit = self._materialize(key, digest, builder)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(artifact)
            return artifact, hit
        finally:
            with self._guard:
                self._inflight.pop(digest, None)

    def _materialize(
        self,
        key: BuildKey,
        digest: str,
        builder: Callable[[Path], None],
    ) -> tuple[DepsArtifact, bool]:
        existing = self.lookup(key)
        if existing is not None:
            logger.info("Deps cache hit for %s", key.label)
            return existing, True

        with file_lock(self.lock_dir, "deps", digest):
            existing = self.lookup(key)
            if existing is not None:
                logger.info(
                    "Deps cache hit for %s (built by another process)", key.label
                )
                return existing, True

            logger.info("Deps cache miss for %s, building", key.label)
            self.root.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{digest[:16]}-", dir=self.root))
            try:
                builder(staging / TARGET_DIRNAME)
                created_at = datetime.now(timezone.utc).isoformat()
                entry = {
                    "key": key.to_dict(),
                    "digest": digest,
                    "created_at": created_at,
                }
                (staging / ENTRY_FILENAME).write_text(
                    json.dumps(entry, indent=2, sort_keys=True), encoding="utf-8"
                )
                final = self.entry_dir(digest)
                if final.exists():
                    # Left over from an interrupted publish without entry.json
                    shutil.rmtree(final)
                staging.rename(final)
            finally:
                if staging.exists():
                    shutil.rmtree(staging, ignore_errors=True)

        return (
            DepsArtifact(key=key, digest=digest, path=final, created_at=created_at),
            False,
        )

    def entries(self) -> list[dict[str, Any]]:
        """List published entries (for cache inspection)."""
        if not self.root.exists():
            return []
        result = []
        for entry_file in sorted(self.root.glob(f"*/{ENTRY_FILENAME}")):
            try:
                result.append(json.loads(entry_file.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Skipping unreadable entry %s: %s", entry_file, e)
        return result

    def prune(self, dry_run: bool = False) -> list[str]:
        """Remove every entry and any interrupted staging directory.

        Args:
            dry_run: If True, only report what would be removed.

        Returns:
            Names of removed (or removable) directories.
        """
        if not self.root.exists():
            return []
        removed: list[str] = []
        for path in sorted(self.root.iterdir()):
            if not path.is_dir():
                continue
            if dry_run:
                logger.info("[DRY RUN] Would remove deps entry: %s", path.name)
            else:
                shutil.rmtree(path)
            removed.append(path.name)
        return removed


__all__ = [
    "ENTRY_FILENAME",
    "DependencyCache",
    "DepsArtifact",
    "copy_target_dir",
    "copy_workspace",
]
