"""Self-built cross toolchains for foreign platforms.

This module handles:
- Pinned recipes (vendor OS sysroot plus compiler-construction sources)
- Staged bootstrap: fetch-sysroot, fetch-sources, build-binutils, build-gcc
- Per-stage stamps so an interrupted bootstrap resumes where it failed
- Memoization by pin digest so a completed toolchain is never rebuilt

Each stage fails fast with CrossToolchainBuildError naming the stage.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from buildmatrix.builds.runner import CommandExecutionError, run_logged
from buildmatrix.errors import (
    CrossToolchainBuildError,
    FetchError,
    OfflineModeError,
)
from buildmatrix.locks import file_lock
from buildmatrix.toolchains.fetch import extract_archive, fetch_to_store

if TYPE_CHECKING:
    from buildmatrix.config import Settings

logger = logging.getLogger(__name__)

# Schema version for the pin digest; bump when the recipe layout changes
CROSS_SCHEMA_VERSION = "1"

STAGE_FETCH_SYSROOT = "fetch-sysroot"
STAGE_FETCH_SOURCES = "fetch-sources"
STAGE_BUILD_BINUTILS = "build-binutils"
STAGE_BUILD_GCC = "build-gcc"

STAGES = (
    STAGE_FETCH_SYSROOT,
    STAGE_FETCH_SOURCES,
    STAGE_BUILD_BINUTILS,
    STAGE_BUILD_GCC,
)

COMPLETE_STAMP = ".complete"

# Non-essential compiler components disabled to keep the bootstrap cheap
GCC_DISABLED_COMPONENTS = (
    "--disable-libada",
    "--disable-libcilkrt",
    "--disable-libcilkrts",
    "--disable-libgomp",
    "--disable-libquadmath",
    "--disable-libquadmath-support",
    "--disable-libsanitizer",
    "--disable-libssp",
    "--disable-libvtv",
    "--disable-lto",
    "--disable-nls",
)


@dataclass(frozen=True)
class SourcePin:
    """A pinned external archive.

    Attributes:
        name: Component name (``binutils``, ``gcc``, ``gmp``...).
        version: Pinned version.
        url: Archive URL.
        sha256: Expected archive checksum, None if unpinned.
    """

    name: str
    version: str
    url: str
    sha256: str | None = None


@dataclass(frozen=True)
class CrossToolchainSpec:
    """Recipe for a cross binutils + GCC toolchain against a vendor sysroot.

    Attributes:
        gnu_target: GNU target triple (e.g. ``x86_64-unknown-freebsd12``).
        sysroot: Vendor OS base filesystem snapshot.
        binutils: Binary utilities source.
        gcc: C/C++ compiler source.
        gcc_prerequisites: Math library sources linked into the GCC tree.
        languages: Front ends to build.
    """

    gnu_target: str
    sysroot: SourcePin
    binutils: SourcePin
    gcc: SourcePin
    gcc_prerequisites: tuple[SourcePin, ...] = ()
    languages: tuple[str, ...] = ("c", "c++")

    @property
    def linker_name(self) -> str:
        """Executable name of the cross compiler driver used as linker."""
        return f"{self.gnu_target}-gcc"

    def sources(self) -> tuple[SourcePin, ...]:
        """Compiler-construction sources in fetch order."""
        return (self.binutils, self.gcc, *self.gcc_prerequisites)

    def digest(self) -> str:
        """Content address of this recipe, derived from its pins only."""
        payload = {"schema_version": CROSS_SCHEMA_VERSION, **asdict(self)}
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def gcc_configure_flags(self, prefix: Path, sysroot: Path) -> list[str]:
        """Configure flags for the cross compiler."""
        return [
            *GCC_DISABLED_COMPONENTS,
            f"--enable-languages={','.join(self.languages)}",
            f"--prefix={prefix}",
            f"--target={self.gnu_target}",
            f"--with-sysroot={sysroot}",
        ]


@dataclass(frozen=True)
class CrossToolchain:
    """A bootstrapped cross toolchain.

    Attributes:
        platform: Platform the toolchain was built for.
        root_dir: Toolchain root (sysroot, sources, install prefix).
        gnu_target: GNU target triple.
    """

    platform: str
    root_dir: Path
    gnu_target: str

    @property
    def prefix(self) -> Path:
        return self.root_dir / "toolchain"

    @property
    def bin_dir(self) -> Path:
        return self.prefix / "bin"

    @property
    def sysroot(self) -> Path:
        return self.root_dir / "sysroot"

    @property
    def linker(self) -> Path:
        """Path to the cross compiler driver."""
        return self.bin_dir / f"{self.gnu_target}-gcc"


@dataclass
class _StageContext:
    """Mutable state threaded through the bootstrap stages."""

    platform: str
    spec: CrossToolchainSpec
    toolchain: CrossToolchain
    log_dir: Path
    sources: dict[str, Path] = field(default_factory=dict)


class CrossToolchainBuilder:
    """Bootstrap cross toolchains as an explicit, finite stage sequence.

    Stages run in order and stop at the first failure. A stage whose
    stamp file exists is skipped, and a root carrying the completion
    stamp is returned without doing any work.
    """

    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[[], httpx.Client] | None = None,
    ) -> None:
        self.settings = settings
        self._client_factory = client_factory or (
            lambda: httpx.Client(follow_redirects=True)
        )

    def root_for(self, platform: str, spec: CrossToolchainSpec) -> Path:
        """Content-addressed root of a platform's cross toolchain."""
        return self.settings.cache_dir / "cross" / f"{platform}-{spec.digest()[:16]}"

    def is_complete(self, platform: str, spec: CrossToolchainSpec) -> bool:
        return (self.root_for(platform, spec) / COMPLETE_STAMP).exists()

    def ensure(self, platform: str, spec: CrossToolchainSpec) -> CrossToolchain:
        """Return the cross toolchain for a platform, bootstrapping it if needed.

        Args:
            platform: Platform name.
            spec: Pinned recipe.

        Returns:
            The bootstrapped CrossToolchain.

        Raises:
            CrossToolchainBuildError: If any stage fails.
            OfflineModeError: If sources must be fetched in offline mode.
        """
        root = self.root_for(platform, spec)
        toolchain = CrossToolchain(
            platform=platform, root_dir=root, gnu_target=spec.gnu_target
        )
        if (root / COMPLETE_STAMP).exists():
            logger.debug("Cross toolchain for %s already built: %s", platform, root)
            return toolchain

        with file_lock(self.settings.cache_dir / ".locks", "cross", root.name):
            if (root / COMPLETE_STAMP).exists():
                return toolchain

            logger.info("Bootstrapping cross toolchain for %s in %s", platform, root)
            ctx = _StageContext(
                platform=platform,
                spec=spec,
                toolchain=toolchain,
                log_dir=root / "logs",
            )
            stage_funcs: dict[str, Callable[[_StageContext], None]] = {
                STAGE_FETCH_SYSROOT: self._fetch_sysroot,
                STAGE_FETCH_SOURCES: self._fetch_sources,
                STAGE_BUILD_BINUTILS: self._build_binutils,
                STAGE_BUILD_GCC: self._build_gcc,
            }
            for stage in STAGES:
                self._run_stage(ctx, stage, stage_funcs[stage])

            (root / COMPLETE_STAMP).write_text(
                json.dumps({"platform": platform, "digest": spec.digest()}),
                encoding="utf-8",
            )

        logger.info("Cross toolchain for %s ready: %s", platform, toolchain.linker)
        return toolchain

    def _run_stage(
        self,
        ctx: _StageContext,
        stage: str,
        func: Callable[[_StageContext], None],
    ) -> None:
        stamp = ctx.toolchain.root_dir / ".stamps" / stage
        if stamp.exists():
            logger.debug("Stage %s already done for %s", stage, ctx.platform)
            if stage == STAGE_FETCH_SOURCES:
                ctx.sources = {
                    pin.name: ctx.toolchain.root_dir / "src" / pin.name
                    for pin in ctx.spec.sources()
                }
            return

        logger.info("[%s] stage %s", ctx.platform, stage)
        try:
            func(ctx)
        except OfflineModeError:
            raise
        except (FetchError, CommandExecutionError, OSError) as e:
            raise CrossToolchainBuildError(
                ctx.platform,
                stage,
                str(e),
                log_path=getattr(e, "log_path", None),
            ) from e

        stamp.parent.mkdir(parents=True, exist_ok=True)
        stamp.touch()

    def _fetch(self, client: httpx.Client, pin: SourcePin) -> Path:
        if self.settings.offline:
            raise OfflineModeError(
                f"Cannot fetch {pin.name} {pin.version} in offline mode",
                context={"url": pin.url},
            )
        return fetch_to_store(
            client,
            pin.url,
            self.settings.cache_dir / "downloads",
            sha256=pin.sha256,
            attempts=self.settings.fetch_retries,
            timeout=self.settings.download_timeout,
        )

    def _fetch_sysroot(self, ctx: _StageContext) -> None:
        sysroot = ctx.toolchain.sysroot
        if sysroot.exists():
            shutil.rmtree(sysroot)
        with self._client_factory() as client:
            archive = self._fetch(client, ctx.spec.sysroot)
        # Base snapshots carry absolute symlinks
        extract_archive(archive, sysroot, extraction_filter="tar")

    def _fetch_sources(self, ctx: _StageContext) -> None:
        src_dir = ctx.toolchain.root_dir / "src"
        with self._client_factory() as client:
            for pin in ctx.spec.sources():
                archive = self._fetch(client, pin)
                dest = src_dir / pin.name
                staging = src_dir / f".{pin.name}"
                for path in (dest, staging):
                    if path.exists():
                        shutil.rmtree(path)
                extracted = extract_archive(archive, staging)
                extracted.rename(dest)
                shutil.rmtree(staging, ignore_errors=True)
                ctx.sources[pin.name] = dest

    def _make(
        self,
        ctx: _StageContext,
        stage: str,
        cmd: list[str],
        cwd: Path,
        env: dict[str, str] | None = None,
    ) -> None:
        result = run_logged(
            cmd,
            cwd=cwd,
            log_path=ctx.log_dir / f"{stage}.log",
            env_override=env,
            timeout=self.settings.cross_build_timeout,
            append=True,
        )
        if not result.success:
            raise CrossToolchainBuildError(
                ctx.platform,
                stage,
                result.error_message or "command failed",
                log_path=result.log_path,
            )

    def _build_binutils(self, ctx: _StageContext) -> None:
        build_dir = ctx.toolchain.root_dir / "build" / "binutils"
        if build_dir.exists():
            shutil.rmtree(build_dir)
        build_dir.mkdir(parents=True)

        configure = ctx.sources["binutils"] / "configure"
        jobs = f"-j{self.settings.build_jobs}"
        self._make(
            ctx,
            STAGE_BUILD_BINUTILS,
            [
                "sh",
                str(configure),
                f"--prefix={ctx.toolchain.prefix}",
                f"--target={ctx.spec.gnu_target}",
                f"--with-sysroot={ctx.toolchain.sysroot}",
            ],
            build_dir,
        )
        self._make(ctx, STAGE_BUILD_BINUTILS, ["make", jobs], build_dir)
        self._make(ctx, STAGE_BUILD_BINUTILS, ["make", "install"], build_dir)

    def _build_gcc(self, ctx: _StageContext) -> None:
        gcc_src = ctx.sources["gcc"]
        for pin in ctx.spec.gcc_prerequisites:
            link = gcc_src / pin.name
            if link.is_symlink() or link.exists():
                continue
            link.symlink_to(ctx.sources[pin.name], target_is_directory=True)

        build_dir = ctx.toolchain.root_dir / "build" / "gcc"
        if build_dir.exists():
            shutil.rmtree(build_dir)
        build_dir.mkdir(parents=True)

        # The cross assembler and linker from the previous stage
        env = {"PATH": str(ctx.toolchain.bin_dir)}
        jobs = f"-j{self.settings.build_jobs}"
        configure = [
            "sh",
            str(gcc_src / "configure"),
            *ctx.spec.gcc_configure_flags(ctx.toolchain.prefix, ctx.toolchain.sysroot),
        ]
        self._make(ctx, STAGE_BUILD_GCC, configure, build_dir, env)
        self._make(ctx, STAGE_BUILD_GCC, ["make", jobs], build_dir, env)
        self._make(ctx, STAGE_BUILD_GCC, ["make", "install"], build_dir, env)


__all__ = [
    "COMPLETE_STAMP",
    "GCC_DISABLED_COMPONENTS",
    "STAGES",
    "STAGE_BUILD_BINUTILS",
    "STAGE_BUILD_GCC",
    "STAGE_FETCH_SOURCES",
    "STAGE_FETCH_SYSROOT",
    "CrossToolchain",
    "CrossToolchainBuilder",
    "CrossToolchainSpec",
    "SourcePin",
]
