"""Toolchain manager.

This module provides:
- Toolchain: an immutable resolved compiler/linker/analysis bundle
- ToolchainManager.resolve(): map a fixed toolchain name to an installed
  toolchain carrying the standard library of every registered platform
- list/prune helpers for the resolved-toolchain cache

Resolution is idempotent and content-addressed: the install root is
derived from the channel manifest checksum and the component list, and
a ready root is reused without network access.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tempfile
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from buildmatrix.builds.runner import CommandExecutionError, run_logged
from buildmatrix.db import get_session
from buildmatrix.errors import FetchError, OfflineModeError, UnknownToolchainError
from buildmatrix.locks import file_lock
from buildmatrix.toolchains.fetch import (
    ComponentSpec,
    extract_archive,
    fetch_manifest,
    fetch_to_store,
    remove_tree,
    select_components,
)
from buildmatrix.toolchains.models import ToolchainRecord
from buildmatrix.types import ToolchainName, ToolchainState

if TYPE_CHECKING:
    from buildmatrix.config import Settings

logger = logging.getLogger(__name__)

COMPLETE_STAMP = ".complete"


@dataclass(frozen=True)
class Toolchain:
    """A resolved toolchain.

    Attributes:
        name: Toolchain name.
        channel: Release channel it was resolved from.
        root_dir: Install root.
        components: ``component@target`` labels installed.
        targets: Target triples with a standard library.
        manifest_sha256: Checksum of the channel manifest used.
    """

    name: str
    channel: str
    root_dir: Path
    components: tuple[str, ...] = ()
    targets: tuple[str, ...] = ()
    manifest_sha256: str | None = None

    @property
    def bin_dir(self) -> Path:
        """Directory holding cargo, rustc and the analysis tools."""
        return self.root_dir / "bin"

    @property
    def cargo(self) -> str:
        """Path to the cargo executable."""
        return str(self.bin_dir / "cargo")

    def env(self) -> dict[str, str]:
        """Environment overrides selecting this toolchain."""
        return {
            "PATH": str(self.bin_dir),
            "CARGO": self.cargo,
            "RUSTC": str(self.bin_dir / "rustc"),
        }

    def supports_target(self, triple: str) -> bool:
        """Whether a standard library for this triple is installed."""
        return triple in self.targets


def toolchain_names() -> list[str]:
    """Return the fixed enumeration of toolchain names."""
    return [t.value for t in ToolchainName]


def parse_toolchain_name(name: str) -> ToolchainName:
    """Validate a toolchain name.

    Raises:
        UnknownToolchainError: If the name is not registered.
    """
    try:
        return ToolchainName(name)
    except ValueError:
        raise UnknownToolchainError(name, toolchain_names()) from None


def install_digest(manifest_sha256: str, specs: Iterable[ComponentSpec]) -> str:
    """Compute the content address of a toolchain install root."""
    payload = {
        "manifest": manifest_sha256,
        "components": sorted(f"{s.label}:{s.sha256}" for s in specs),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class ToolchainManager:
    """Resolve named toolchains into installed, cached toolchains.

    One manager is constructed per process. ``cross_targets`` lists the
    target triples of every registered foreign platform so that any of
    them can be built without re-resolving.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        cross_targets: Iterable[str] = (),
        client_factory: Callable[[], httpx.Client] | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.cross_targets = tuple(sorted(set(cross_targets)))
        self._client_factory = client_factory or (
            lambda: httpx.Client(follow_redirects=True)
        )
        self._resolved: dict[str, Toolchain] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def required_targets(self) -> tuple[str, ...]:
        """Triples every resolved toolchain must carry a standard library for."""
        return tuple(
            [self.settings.host_triple]
            + [t for t in self.cross_targets if t != self.settings.host_triple]
        )

    @property
    def toolchains_dir(self) -> Path:
        return self.settings.cache_dir / "toolchains"

    def channel_for(self, name: ToolchainName) -> str:
        """Return the release channel backing a toolchain name."""
        if name is ToolchainName.MSRV:
            return self.settings.msrv_version
        return name.value

    def resolve(self, name: str) -> Toolchain:
        """Resolve a toolchain by name.

        Args:
            name: One of the fixed toolchain names.

        Returns:
            Installed Toolchain.

        Raises:
            UnknownToolchainError: If the name is not registered.
            OfflineModeError: If a fetch is required in offline mode.
            FetchError: If fetching or installing components fails.
        """
        toolchain_name = parse_toolchain_name(name)

        with self._locks_guard:
            name_lock = self._locks.setdefault(toolchain_name.value, threading.Lock())

        # Different toolchains resolve concurrently
        with name_lock:
            cached = self._resolved.get(toolchain_name.value)
            if cached is not None:
                return cached

            toolchain = self._resolve_uncached(toolchain_name)
            self._resolved[toolchain_name.value] = toolchain
            return toolchain

    def _from_record(self, record: ToolchainRecord) -> Toolchain:
        return Toolchain(
            name=record.name,
            channel=record.channel,
            root_dir=Path(record.root_dir),
            components=tuple(record.components or ()),
            targets=tuple(record.targets or ()),
            manifest_sha256=record.manifest_sha256,
        )

    def _usable(self, record: ToolchainRecord | None) -> bool:
        """Whether a cached record can be reused as-is."""
        if record is None or not record.is_ready():
            return False
        root = Path(record.root_dir)
        if not (root / COMPLETE_STAMP).exists():
            logger.warning("Toolchain root missing, re-resolving: %s", root)
            return False
        missing = set(self.required_targets) - set(record.targets or ())
        if missing:
            logger.info(
                "Toolchain %s lacks targets %s, re-resolving",
                record.name,
                ", ".join(sorted(missing)),
            )
            return False
        return True

    def _resolve_uncached(self, name: ToolchainName) -> Toolchain:
        channel = self.channel_for(name)

        with get_session(self.session_factory) as session:
            record = _get_record(session, name.value)
            if self._usable(record) and record is not None:
                logger.info("Using cached toolchain %s (%s)", name.value, channel)
                record.last_used_at = datetime.now(timezone.utc)
                return self._from_record(record)

        if self.settings.offline:
            raise OfflineModeError(
                f"Cannot resolve toolchain {name.value} in offline mode",
                context={"toolchain": name.value},
            )

        with file_lock(self.settings.cache_dir / ".locks", "toolchain", name.value):
            with get_session(self.session_factory) as session:
                record = _get_record(session, name.value)
                if self._usable(record) and record is not None:
                    logger.info(
                        "Toolchain %s became available while waiting for lock",
                        name.value,
                    )
                    return self._from_record(record)

                if record is None:
                    record = ToolchainRecord(
                        name=name.value,
                        channel=channel,
                        state=ToolchainState.PENDING.value,
                    )
                    session.add(record)
                    session.flush()

                try:
                    toolchain = self._install(name.value, channel)
                except FetchError as e:
                    record.mark_broken()
                    session.commit()
                    e.with_context(toolchain=name.value)
                    logger.error("Failed to resolve toolchain %s: %s", name.value, e)
                    raise

                now = datetime.now(timezone.utc)
                record.channel = channel
                record.root_dir = str(toolchain.root_dir)
                record.manifest_sha256 = toolchain.manifest_sha256
                record.components = list(toolchain.components)
                record.targets = list(toolchain.targets)
                record.resolved_at = now
                record.last_used_at = now
                record.mark_ready()
                return toolchain

    def _install(self, name: str, channel: str) -> Toolchain:
        """Fetch the channel manifest and install every needed component."""
        attempts = self.settings.fetch_retries
        with self._client_factory() as client:
            manifest, manifest_sha256 = fetch_manifest(
                client, self.settings.rust_dist_url, channel, attempts=attempts
            )
            specs = select_components(
                manifest, self.settings.host_triple, self.cross_targets
            )
            digest = install_digest(manifest_sha256, specs)
            root = self.toolchains_dir / f"{name}-{digest[:16]}"
            toolchain = Toolchain(
                name=name,
                channel=channel,
                root_dir=root,
                components=tuple(s.label for s in specs),
                targets=self.required_targets,
                manifest_sha256=manifest_sha256,
            )

            if (root / COMPLETE_STAMP).exists():
                logger.info("Toolchain root already installed: %s", root)
                return toolchain

            archives = [
                (
                    spec,
                    fetch_to_store(
                        client,
                        spec.url,
                        self.settings.cache_dir / "downloads",
                        sha256=spec.sha256,
                        attempts=attempts,
                        timeout=self.settings.download_timeout,
                    ),
                )
                for spec in specs
            ]

        self._install_archives(root, archives)
        logger.info("Toolchain %s (%s) ready at %s", name, channel, root)
        return toolchain

    def _install_archives(
        self, root: Path, archives: list[tuple[ComponentSpec, Path]]
    ) -> None:
        """Install component archives into a staging root, then publish it."""
        self.toolchains_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f".{root.name}-", dir=self.toolchains_dir)
        )
        work = Path(tempfile.mkdtemp(prefix=".work-", dir=self.toolchains_dir))
        try:
            for spec, archive in archives:
                extracted = extract_archive(archive, work / spec.label)
                installer = extracted / "install.sh"
                if not installer.exists():
                    raise FetchError(
                        f"Component {spec.label} has no install.sh",
                        url=spec.url,
                        code="install_error",
                        retryable=False,
                    )
                try:
                    result = run_logged(
                        [
                            "sh",
                            str(installer),
                            f"--prefix={staging}",
                            "--disable-ldconfig",
                        ],
                        cwd=extracted,
                        log_path=work / "install.log",
                        append=True,
                    )
                except CommandExecutionError as e:
                    raise FetchError(
                        f"Failed to install {spec.label}: {e}",
                        url=spec.url,
                        code="install_error",
                        retryable=False,
                    ) from e
                if not result.success:
                    raise FetchError(
                        f"Installing {spec.label} failed: {result.error_message}",
                        url=spec.url,
                        code="install_error",
                        retryable=False,
                    )

            (staging / COMPLETE_STAMP).write_text(
                json.dumps([s.label for s, _ in archives]), encoding="utf-8"
            )
            if root.exists():
                shutil.rmtree(root)
            staging.rename(root)
        finally:
            shutil.rmtree(work, ignore_errors=True)
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)


def _get_record(session: Session, name: str) -> ToolchainRecord | None:
    """Get a toolchain record by name."""
    stmt = select(ToolchainRecord).where(ToolchainRecord.name == name)
    return session.execute(stmt).scalars().first()


def list_toolchains(session: Session) -> list[ToolchainRecord]:
    """List resolved toolchains.

    Args:
        session: Database session.

    Returns:
        ToolchainRecord instances ordered by name.
    """
    stmt = select(ToolchainRecord).order_by(ToolchainRecord.name)
    return list(session.execute(stmt).scalars().all())


def prune_toolchains(
    session: Session,
    settings: Settings,
    dry_run: bool = False,
) -> list[str]:
    """Remove install roots that no toolchain record points at.

    Args:
        session: Database session.
        settings: Application settings.
        dry_run: If True, only report what would be removed.

    Returns:
        Names of removed (or removable) install roots.
    """
    toolchains_dir = settings.cache_dir / "toolchains"
    if not toolchains_dir.exists():
        return []

    live = {
        Path(r.root_dir).name
        for r in list_toolchains(session)
        if r.state == ToolchainState.READY.value
    }
    pruned: list[str] = []
    for path in sorted(toolchains_dir.iterdir()):
        if not path.is_dir() or path.name in live:
            continue
        if dry_run:
            logger.info("[DRY RUN] Would prune toolchain root: %s", path.name)
        else:
            remove_tree(path)
        pruned.append(path.name)
    return pruned


__all__ = [
    "COMPLETE_STAMP",
    "Toolchain",
    "ToolchainManager",
    "install_digest",
    "list_toolchains",
    "parse_toolchain_name",
    "prune_toolchains",
    "toolchain_names",
]
