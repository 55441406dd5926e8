"""Packaging/signing pipeline.

This module provides:
- Packager.package(): turn a compiled binary into the platform's deliverable
- Identity packaging for the native platform
- Signed vendor packages for platforms that require them

Signing happens in a private staging directory that is published with a
rename on success and removed on failure. A failed signing run is never
retried and never replaced by an unsigned artifact.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from buildmatrix.builds.artifacts import compute_file_hash
from buildmatrix.builds.runner import CommandExecutionError, run_logged
from buildmatrix.errors import ConfigurationError, SigningError
from buildmatrix.packaging.manifest import build_manifest
from buildmatrix.packaging.signing import SigningMaterial, compose_signer_command
from buildmatrix.types import PackagerKind

if TYPE_CHECKING:
    from buildmatrix.config import Settings
    from buildmatrix.platforms.base import Platform
    from buildmatrix.units.schema import BuildUnit

logger = logging.getLogger(__name__)

MANIFEST_NAME = "jet-manifest.yaml"


@dataclass
class PackageResult:
    """A platform deliverable.

    Attributes:
        unit: Build unit name.
        platform: Platform name.
        path: Binary (native) or signed package directory.
        signed: Whether the deliverable was produced by the signer.
        manifest_path: Package manifest, for signed packages.
        log_path: Signer output, for signed packages.
    """

    unit: str
    platform: str
    path: Path
    signed: bool = False
    manifest_path: Path | None = None
    log_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "unit": self.unit,
            "platform": self.platform,
            "path": str(self.path),
            "signed": self.signed,
            "manifest_path": str(self.manifest_path) if self.manifest_path else None,
            "log_path": str(self.log_path) if self.log_path else None,
        }


class Packager:
    """Produce platform deliverables from compiled binaries."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def packages_dir(self) -> Path:
        return self.settings.artifacts_dir / "packages"

    def default_material(self) -> SigningMaterial:
        """Signing material from the configured certificate and key paths."""
        return SigningMaterial(
            cert=self.settings.signing_cert, key=self.settings.signing_key
        )

    def preflight(
        self, platform: Platform, material: SigningMaterial | None = None
    ) -> None:
        """Validate signing material before any work is done for a platform.

        Raises:
            SigningMaterialMissingError: If the platform signs and material is absent.
        """
        if platform.packager is PackagerKind.JET:
            (material or self.default_material()).validate()

    def package(
        self,
        artifact_path: Path,
        unit: BuildUnit,
        platform: Platform,
        material: SigningMaterial | None = None,
        copyright: str | None = None,
    ) -> PackageResult:
        """Package a compiled binary for a platform.

        Args:
            artifact_path: Compiled binary.
            unit: Build unit the binary belongs to.
            platform: Target platform.
            material: Signing material; defaults to the configured paths.
            copyright: Copyright line for the manifest.

        Returns:
            PackageResult; the binary itself for identity packaging.

        Raises:
            SigningMaterialMissingError: If certificate or key is unavailable.
            SigningError: If the signer fails.
        """
        if platform.packager is PackagerKind.IDENTITY:
            return PackageResult(
                unit=unit.name, platform=platform.name, path=artifact_path
            )
        if platform.packager is not PackagerKind.JET:
            raise ConfigurationError(
                f"Unsupported packager {platform.packager.value}",
                context={"platform": platform.name},
            )

        material = (material or self.default_material()).validate()
        manifest = build_manifest(
            unit,
            platform,
            artifact_path,
            copyright=copyright or self.settings.package_copyright,
        )
        context = {"unit": unit.name, "platform": platform.name}

        # Builds land in per-build directories, so identical binaries are
        # matched by content rather than by path
        digest = hashlib.sha256(
            (
                manifest.to_yaml(with_sources=False) + compute_file_hash(artifact_path)
            ).encode("utf-8")
        ).hexdigest()
        name = f"{manifest.basename}-{unit.version}-{digest[:16]}"
        final = self.packages_dir / name
        log_path = self.packages_dir / "logs" / f"{name}.log"
        manifest_path = self.packages_dir / "manifests" / f"{name}.yaml"
        if final.exists():
            logger.info("Signed package already exists: %s", final)
            return PackageResult(
                unit=unit.name,
                platform=platform.name,
                path=final,
                signed=True,
                manifest_path=manifest_path,
                log_path=log_path,
            )

        self.packages_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=self.packages_dir))
        try:
            out_dir = staging / "out"
            out_dir.mkdir()
            staged_manifest = manifest.write(staging / MANIFEST_NAME)

            # Key material may have disappeared since the build started
            material.validate()
            cmd = compose_signer_command(
                self.settings.signer_path,
                unit.version,
                staged_manifest,
                material,
                staging / "build",
            )
            try:
                result = run_logged(
                    cmd,
                    cwd=out_dir,
                    log_path=log_path,
                    timeout=self.settings.build_timeout,
                )
            except CommandExecutionError as e:
                raise SigningError(
                    f"Signer could not run: {e}",
                    exit_code=e.exit_code,
                    log_path=log_path,
                    context=context,
                ) from e
            if not result.success:
                raise SigningError(
                    f"Signer failed: {result.error_message}",
                    exit_code=result.exit_code,
                    log_path=log_path,
                    context=context,
                )

            manifest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(staged_manifest, manifest_path)
            out_dir.rename(final)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Signed package for %s written to %s", unit.name, final)
        return PackageResult(
            unit=unit.name,
            platform=platform.name,
            path=final,
            signed=True,
            manifest_path=manifest_path,
            log_path=log_path,
        )


__all__ = ["MANIFEST_NAME", "PackageResult", "Packager"]
