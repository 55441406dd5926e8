"""Orchestrator: the caller-facing build and check operations.

This module provides:
- Registry: every long-lived component, built once per process
- create_registry(): wire components from settings
- Orchestrator.build(): build (and package) one unit for one platform
- Orchestrator.check(): run every check for one toolchain
- Orchestrator.matrix(): list a unit's feature sets
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from sqlalchemy.orm import Session, sessionmaker

from buildmatrix.builds.features import FeatureSet, expand
from buildmatrix.builds.service import BuildGraph, BuildOutcome
from buildmatrix.checks.report import CheckReport
from buildmatrix.checks.service import ChecksAggregator
from buildmatrix.config import Settings
from buildmatrix.db import create_all_tables, get_engine, get_session_factory
from buildmatrix.errors import BuildFailureError, ConfigurationError
from buildmatrix.packaging.service import PackageResult, Packager
from buildmatrix.platforms.base import Platform
from buildmatrix.platforms.cross import CrossToolchainBuilder
from buildmatrix.platforms.junos import JUNOS_FREEBSD
from buildmatrix.platforms.registry import PlatformRegistry
from buildmatrix.toolchains.service import Toolchain, ToolchainManager
from buildmatrix.types import ToolchainName
from buildmatrix.units.schema import BuildUnit
from buildmatrix.units.service import find_unit, load_units, read_workspace

logger = logging.getLogger(__name__)

DEFAULT_TOOLCHAIN = ToolchainName.STABLE.value

# Foreign platforms registered at startup
BUILTIN_FOREIGN_PLATFORMS = (JUNOS_FREEBSD,)


@dataclass
class Registry:
    """Long-lived components shared by every operation.

    Attributes:
        settings: Application settings.
        session_factory: Database session factory.
        platforms: Platform registry.
        toolchains: Toolchain manager.
        build_graph: Build graph.
        checks: Checks aggregator.
        packager: Packaging/signing pipeline.
    """

    settings: Settings
    session_factory: sessionmaker[Session]
    platforms: PlatformRegistry
    toolchains: ToolchainManager
    build_graph: BuildGraph
    checks: ChecksAggregator
    packager: Packager


def create_registry(
    settings: Settings,
    session_factory: sessionmaker[Session] | None = None,
    client_factory: Callable[[], httpx.Client] | None = None,
    foreign_platforms: tuple[Platform, ...] = BUILTIN_FOREIGN_PLATFORMS,
) -> Registry:
    """Construct the registry for a process.

    Args:
        settings: Application settings.
        session_factory: Session factory; created from ``settings.db_url``
            (tables included) when omitted.
        client_factory: HTTP client factory for fetches.
        foreign_platforms: Foreign platforms to register.

    Returns:
        Wired Registry.
    """
    if session_factory is None:
        engine = get_engine(settings.db_url)
        create_all_tables(engine)
        session_factory = get_session_factory(engine)

    platforms = PlatformRegistry(CrossToolchainBuilder(settings, client_factory))
    for descriptor in foreign_platforms:
        platforms.register_foreign(descriptor)

    toolchains = ToolchainManager(
        settings,
        session_factory,
        cross_targets=platforms.cross_targets(),
        client_factory=client_factory,
    )
    build_graph = BuildGraph(settings, session_factory, platforms)
    return Registry(
        settings=settings,
        session_factory=session_factory,
        platforms=platforms,
        toolchains=toolchains,
        build_graph=build_graph,
        checks=ChecksAggregator(settings, build_graph, platforms),
        packager=Packager(settings),
    )


@dataclass
class BuildResult:
    """Outcome of a caller-facing build.

    Attributes:
        outcome: Build graph outcome for the binary.
        package: Platform deliverable.
    """

    outcome: BuildOutcome
    package: PackageResult

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "build": self.outcome.to_dict(),
            "package": self.package.to_dict(),
        }


class Orchestrator:
    """Caller-facing operations over a Registry."""

    def __init__(self, registry: Registry) -> None:
        self.registry = registry
        self.settings = registry.settings

    def units(self, toolchain: Toolchain | None = None) -> list[BuildUnit]:
        """Declared build units of the workspace."""
        return load_units(self.settings, toolchain)

    def _resolve_feature_set(self, unit: BuildUnit, name: str) -> FeatureSet:
        feature_set = FeatureSet.parse(name)
        if feature_set not in expand(unit.features):
            raise ConfigurationError(
                f"Feature set {name!r} is not in the matrix of {unit.name}",
                code="unknown_feature_set",
                context={"unit": unit.name, "feature_set": name},
            )
        return feature_set

    def _resolve_platform(self, unit: BuildUnit, name: str | None) -> Platform:
        name = name or unit.platforms[0]
        if name not in unit.platforms:
            raise ConfigurationError(
                f"Unit {unit.name} is not offered for platform {name} "
                f"(offered: {', '.join(unit.platforms)})",
                code="platform_not_offered",
                context={"unit": unit.name, "platform": name},
            )
        return self.registry.platforms.get(name)

    def build(
        self,
        unit_name: str,
        platform: str | None = None,
        toolchain: str = DEFAULT_TOOLCHAIN,
        feature_set: str = "default",
    ) -> BuildResult:
        """Build a unit for a platform and produce its deliverable.

        Args:
            unit_name: Build unit name.
            platform: Platform name; defaults to the unit's default platform,
                then ``native``. Must be one the unit is offered for.
            toolchain: Toolchain name.
            feature_set: Feature set name.

        Returns:
            BuildResult holding the binary and its deliverable.

        Raises:
            ConfigurationError: Unknown toolchain/platform/feature set, a
                platform the unit is not offered for, or missing signing
                material.
            MetadataError: Unit missing or declared twice.
            BuildFailureError: Compilation failed.
            CrossToolchainBuildError: The platform's cross toolchain failed.
            SigningError: The signer failed.
        """
        # Reject unknown names before any toolchain is fetched
        if platform is not None:
            self.registry.platforms.get(platform)

        resolved = self.registry.toolchains.resolve(toolchain)
        unit = find_unit(self.units(resolved), unit_name)
        target = self._resolve_platform(unit, platform)
        fs = self._resolve_feature_set(unit, feature_set)

        # Fail closed before compiling anything
        self.registry.packager.preflight(target)

        outcome = self.registry.build_graph.build(
            resolved, unit, fs, target, with_dependencies=True
        )
        if outcome.artifact_path is None:
            raise BuildFailureError(
                f"Build {outcome.key.label} produced no binary",
                code="missing_binary",
                context=outcome.key.context(),
            )

        workspace = read_workspace(self.settings)
        package = self.registry.packager.package(
            outcome.artifact_path,
            unit,
            target,
            copyright=workspace.copyright if workspace else None,
        )
        return BuildResult(outcome=outcome, package=package)

    def check(self, toolchain: str = DEFAULT_TOOLCHAIN) -> CheckReport:
        """Run every check for a toolchain.

        Raises:
            UnknownToolchainError: If the toolchain name is not registered.
            MetadataError: If unit metadata cannot be loaded.
        """
        resolved = self.registry.toolchains.resolve(toolchain)
        return self.registry.checks.run_all(resolved, self.units(resolved))

    def matrix(self, unit_name: str, toolchain: str | None = None) -> list[FeatureSet]:
        """List the feature-set matrix of a unit.

        Uses the workspace description file when no toolchain is given
        and one is configured, so no toolchain needs to be resolved.
        """
        return expand(self._find_unit(unit_name, toolchain).features)

    def unit_platforms(
        self, unit_name: str, toolchain: str | None = None
    ) -> list[Platform]:
        """List the registered platforms a unit is offered for.

        Raises:
            UnknownPlatformError: If the unit names an unregistered platform.
        """
        unit = self._find_unit(unit_name, toolchain)
        return [self.registry.platforms.get(name) for name in unit.platforms]

    def _find_unit(self, unit_name: str, toolchain: str | None) -> BuildUnit:
        # The description file answers without resolving a toolchain
        resolved: Toolchain | None = None
        if toolchain is not None or self.settings.units_file is None:
            resolved = self.registry.toolchains.resolve(toolchain or DEFAULT_TOOLCHAIN)
        return find_unit(self.units(resolved), unit_name)


__all__ = [
    "BUILTIN_FOREIGN_PLATFORMS",
    "DEFAULT_TOOLCHAIN",
    "BuildResult",
    "Orchestrator",
    "Registry",
    "create_registry",
]
