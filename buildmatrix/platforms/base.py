"""Platform and build request types.

A platform is a build target: exactly one native platform (identity
transform) and zero or more foreign platforms, each supplying
environment overrides and a packaging convention.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType

from buildmatrix.builds.features import FeatureSet
from buildmatrix.platforms.cross import CrossToolchainSpec
from buildmatrix.types import PackagerKind

NATIVE_PLATFORM = "native"


@dataclass(frozen=True)
class Platform:
    """A registered build target.

    Attributes:
        name: Platform name (``native``, ``junos-freebsd``...).
        rust_target: Target triple override, None for the host.
        linker: Linker to use for the target instead of a self-built one.
        cross_toolchain: Pinned recipe for a self-built cross toolchain.
        packager: Packaging convention.
        arch: Architecture token written into package manifests.
        abi: ABI token written into package manifests.
        install_dir: Directory binaries are installed to on the device.
    """

    name: str
    rust_target: str | None = None
    linker: str | None = None
    cross_toolchain: CrossToolchainSpec | None = None
    packager: PackagerKind = PackagerKind.IDENTITY
    arch: str | None = None
    abi: str | None = None
    install_dir: str | None = None

    @property
    def is_native(self) -> bool:
        return self.name == NATIVE_PLATFORM

    @property
    def linker_env_var(self) -> str | None:
        """Cargo's per-target linker variable (``CARGO_TARGET_<TRIPLE>_LINKER``)."""
        if self.rust_target is None:
            return None
        return f"CARGO_TARGET_{self.rust_target.upper().replace('-', '_')}_LINKER"

    @property
    def cfg_flag(self) -> str:
        """Compile-time flag identifying this platform to the unit's source."""
        return f'--cfg target_platform="{self.name}"'

    def package_name(self, unit_name: str) -> str:
        """Name of a unit's deliverable on this platform."""
        if self.is_native:
            return unit_name
        return f"{unit_name}-{self.name}"

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "rust_target": self.rust_target,
            "linker": self.linker,
            "gnu_target": (
                self.cross_toolchain.gnu_target if self.cross_toolchain else None
            ),
            "packager": self.packager.value,
            "arch": self.arch,
            "abi": self.abi,
            "install_dir": self.install_dir,
        }


@dataclass(frozen=True)
class BuildRequest:
    """One build graph execution request.

    Attributes:
        toolchain: Toolchain name.
        unit: Build unit name.
        feature_set: Feature set to build with.
        platform: Platform name.
        target: Target triple for cross builds, None for the host.
        env: Environment overrides for every command of the build.
    """

    toolchain: str
    unit: str
    feature_set: FeatureSet
    platform: str = NATIVE_PLATFORM
    target: str | None = None
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def with_env(self, overrides: Mapping[str, str]) -> BuildRequest:
        """Return a copy with environment overrides merged in.

        ``PATH`` entries are prepended to any existing override,
        ``RUSTFLAGS`` are appended.
        """
        env = dict(self.env)
        for key, value in overrides.items():
            if key == "PATH" and env.get("PATH"):
                env[key] = f"{value}{os.pathsep}{env['PATH']}"
            elif key == "RUSTFLAGS" and env.get("RUSTFLAGS"):
                env[key] = f"{env['RUSTFLAGS']} {value}"
            else:
                env[key] = value
        return replace(self, env=MappingProxyType(env))


__all__ = ["NATIVE_PLATFORM", "BuildRequest", "Platform"]
