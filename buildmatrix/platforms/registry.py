"""Platform registry.

Constructed once per process and passed by reference to every
component that needs to resolve a platform name.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace

from buildmatrix.errors import (
    ConfigurationError,
    CrossToolchainBuildError,
    UnknownPlatformError,
)
from buildmatrix.platforms.base import NATIVE_PLATFORM, BuildRequest, Platform
from buildmatrix.platforms.cross import CrossToolchain, CrossToolchainBuilder

logger = logging.getLogger(__name__)


class PlatformRegistry:
    """Registry of one native platform and any number of foreign ones.

    A failed cross toolchain bootstrap is remembered for that platform
    only: later requests for it fail immediately with the same error,
    while native and other foreign platforms keep working.
    """

    def __init__(self, cross_builder: CrossToolchainBuilder | None = None) -> None:
        self._native = Platform(name=NATIVE_PLATFORM)
        self._foreign: dict[str, Platform] = {}
        self._cross_builder = cross_builder
        self._failures: dict[str, CrossToolchainBuildError] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def native(self) -> Platform:
        """Return the native (identity) platform."""
        return self._native

    def register_foreign(self, descriptor: Platform) -> Platform:
        """Register a foreign platform.

        Args:
            descriptor: Platform to register.

        Returns:
            The registered platform.

        Raises:
            ConfigurationError: If the name is taken or the descriptor has
                no target triple.
        """
        if descriptor.name == NATIVE_PLATFORM or descriptor.name in self._foreign:
            raise ConfigurationError(
                f"Platform already registered: {descriptor.name}",
                code="duplicate_platform",
                context={"platform": descriptor.name},
            )
        if descriptor.rust_target is None:
            raise ConfigurationError(
                f"Foreign platform {descriptor.name} has no target triple",
                context={"platform": descriptor.name},
            )
        self._foreign[descriptor.name] = descriptor
        logger.debug("Registered foreign platform %s", descriptor.name)
        return descriptor

    def get(self, name: str) -> Platform:
        """Look up a platform by name.

        Raises:
            UnknownPlatformError: If no platform has this name.
        """
        if name == NATIVE_PLATFORM:
            return self._native
        platform = self._foreign.get(name)
        if platform is None:
            raise UnknownPlatformError(name, self.names())
        return platform

    def foreign(self) -> list[Platform]:
        """Foreign platforms in registration order."""
        return list(self._foreign.values())

    def names(self) -> list[str]:
        return [NATIVE_PLATFORM, *self._foreign]

    def cross_targets(self) -> list[str]:
        """Target triples the toolchain manager must carry a standard library for."""
        return [p.rust_target for p in self._foreign.values() if p.rust_target]

    def failure(self, name: str) -> CrossToolchainBuildError | None:
        """Return the remembered bootstrap failure for a platform, if any."""
        return self._failures.get(name)

    def ensure_cross_toolchain(self, platform: Platform) -> CrossToolchain | None:
        """Bootstrap a platform's cross toolchain, remembering failures.

        Returns:
            The cross toolchain, or None if the platform needs none.

        Raises:
            CrossToolchainBuildError: If bootstrapping fails now or failed before.
        """
        spec = platform.cross_toolchain
        if spec is None:
            return None

        with self._locks_guard:
            platform_lock = self._locks.setdefault(platform.name, threading.Lock())

        with platform_lock:
            failure = self._failures.get(platform.name)
            if failure is not None:
                raise failure
            if self._cross_builder is None:
                raise ConfigurationError(
                    f"No cross toolchain builder configured for {platform.name}",
                    context={"platform": platform.name},
                )
            try:
                return self._cross_builder.ensure(platform.name, spec)
            except CrossToolchainBuildError as e:
                logger.error("Platform %s disabled: %s", platform.name, e)
                self._failures[platform.name] = e
                raise

    def apply_to(self, platform: Platform, request: BuildRequest) -> BuildRequest:
        """Merge a platform's environment overrides into a build request.

        A no-op for the native platform. For a foreign platform the cross
        toolchain is bootstrapped first, then the target triple, linker,
        platform cfg flag and cross ``bin`` directory are injected.

        Args:
            platform: Platform to build for.
            request: Request to transform.

        Returns:
            New request; the input is not modified.

        Raises:
            CrossToolchainBuildError: If the cross toolchain is unavailable.
        """
        if platform.is_native:
            return request

        overrides: dict[str, str] = {"RUSTFLAGS": platform.cfg_flag}
        if platform.rust_target:
            overrides["CARGO_BUILD_TARGET"] = platform.rust_target

        cross = self.ensure_cross_toolchain(platform)
        if cross is not None:
            overrides["PATH"] = str(cross.bin_dir)
        linker = platform.linker or (str(cross.linker) if cross is not None else None)
        if linker is not None and platform.linker_env_var is not None:
            overrides[platform.linker_env_var] = linker

        return replace(
            request.with_env(overrides),
            platform=platform.name,
            target=platform.rust_target,
        )


__all__ = ["PlatformRegistry"]
