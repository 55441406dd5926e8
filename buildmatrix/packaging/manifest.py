"""Package manifest generation.

A package manifest describes a signed deployable: its base name, a
human description, copyright line, architecture and ABI tokens, and
where each file lands on the device. It is derived purely from the
build unit and the platform.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

import yaml
from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from buildmatrix.platforms.base import Platform
    from buildmatrix.units.schema import BuildUnit

DEFAULT_COPYRIGHT = "Copyright 2023, Workonline Communications"


class PackageFile(BaseModel):
    """A single file mapping in a package manifest."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(description="Path of the file on the build host")
    destination: str = Field(description="Absolute install path on the device")


class PackageManifest(BaseModel):
    """Schema of a signed package manifest.

    Attributes:
        basename: Package base name (``<unit>-<platform>``).
        comment: Human-readable description.
        copyright: Copyright line.
        arch: Target architecture token.
        abi: Target ABI token.
        files: Source to destination mappings.
    """

    model_config = ConfigDict(frozen=True)

    basename: str
    comment: str
    copyright: str
    arch: str
    abi: str
    files: list[PackageFile]

    def to_yaml(self, with_sources: bool = True) -> str:
        """Render deterministically as YAML.

        Args:
            with_sources: Include build-host source paths; without them the
                text depends only on the unit, the platform and the device
                layout.
        """
        exclude = None if with_sources else {"files": {"__all__": {"source"}}}
        return yaml.safe_dump(
            self.model_dump(mode="json", exclude=exclude),
            sort_keys=False,
            default_flow_style=False,
        )

    def write(self, path: Path) -> Path:
        """Write the manifest to a file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_yaml(), encoding="utf-8")
        return path


def build_manifest(
    unit: BuildUnit,
    platform: Platform,
    binary_path: Path,
    copyright: str | None = None,
) -> PackageManifest:
    """Derive the package manifest for a unit on a platform.

    Args:
        unit: Build unit being packaged.
        platform: Foreign platform with packaging conventions.
        binary_path: Compiled binary on the build host.
        copyright: Copyright line; a default is used when omitted.

    Returns:
        PackageManifest mapping the binary into the platform's install dir.

    Raises:
        ValueError: If the platform lacks arch/ABI/install conventions.
    """
    if not (platform.arch and platform.abi and platform.install_dir):
        raise ValueError(f"Platform {platform.name} has no packaging conventions")

    destination = PurePosixPath(platform.install_dir) / unit.bin_name
    return PackageManifest(
        basename=platform.package_name(unit.name),
        comment=unit.description or unit.name,
        copyright=copyright or DEFAULT_COPYRIGHT,
        arch=platform.arch,
        abi=platform.abi,
        files=[PackageFile(source=str(binary_path), destination=str(destination))],
    )


__all__ = ["DEFAULT_COPYRIGHT", "PackageFile", "PackageManifest", "build_manifest"]
