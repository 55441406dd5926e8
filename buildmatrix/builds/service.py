"""Build graph service.

This module provides the build API used by checks and the orchestrator:
- BuildGraph.build_deps(): dependency-only build, cached per key
- BuildGraph.build(): final binary or lint run for one matrix cell
- Build record and artifact persistence
- Build record queries

Every cell runs in its own copy of the workspace and its own target
directory, so unrelated cells can run in parallel.
"""

from __future__ import annotations

import logging
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from buildmatrix.builds.artifacts import (
    MANIFEST_FILENAME,
    collect_binary,
    generate_manifest,
    write_manifest,
)
from buildmatrix.builds.cache import (
    DependencyCache,
    DepsArtifact,
    copy_target_dir,
    copy_workspace,
)
from buildmatrix.builds.cache_key import BuildKey, compute_cache_key, lockfile_digest
from buildmatrix.builds.features import FeatureSet
from buildmatrix.builds.models import Artifact, BuildRecord
from buildmatrix.builds.runner import (
    CLIPPY_LINT_ARGS,
    CommandExecutionError,
    CommandResult,
    compose_cargo_command,
    compose_deps_commands,
    run_logged,
)
from buildmatrix.db import get_session
from buildmatrix.errors import BuildFailureError
from buildmatrix.platforms.base import BuildRequest
from buildmatrix.types import ArtifactInfo, BuildKind, BuildStatus

if TYPE_CHECKING:
    from buildmatrix.config import Settings
    from buildmatrix.platforms.base import Platform
    from buildmatrix.platforms.registry import PlatformRegistry
    from buildmatrix.toolchains.service import Toolchain
    from buildmatrix.units.schema import BuildUnit

logger = logging.getLogger(__name__)


@dataclass
class BuildOutcome:
    """Result of one build graph execution.

    Attributes:
        key: Build key of the cell.
        cache_key: Digest of the key.
        kind: binary or lint.
        success: Whether the compiler/linter succeeded.
        log_path: Captured output.
        build_id: BuildRecord ID.
        artifact: Collected binary (binary builds only).
        artifact_path: Absolute path of the collected binary.
        manifest_path: Path of the written build manifest.
        deps_cache_hit: Whether the dependency artifact was reused
            (None when built without dependencies).
        diagnostics: Tail of the log on failure.
    """

    key: BuildKey
    cache_key: str
    kind: BuildKind
    success: bool
    log_path: Path
    build_id: int | None = None
    artifact: ArtifactInfo | None = None
    artifact_path: Path | None = None
    manifest_path: Path | None = None
    deps_cache_hit: bool | None = None
    diagnostics: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "key": self.key.to_dict(),
            "cache_key": self.cache_key,
            "kind": self.kind.value,
            "success": self.success,
            "log_path": str(self.log_path),
            "build_id": self.build_id,
            "deps_cache_hit": self.deps_cache_hit,
        }
        if self.artifact_path is not None:
            result["artifact_path"] = str(self.artifact_path)
        if self.artifact is not None:
            result["sha256"] = self.artifact.sha256
            result["size_bytes"] = self.artifact.size_bytes
        if self.manifest_path is not None:
            result["manifest_path"] = str(self.manifest_path)
        if self.diagnostics:
            result["diagnostics"] = self.diagnostics
        return result


class BuildGraph:
    """Execute toolchain + unit + feature-set build requests."""

    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        platforms: PlatformRegistry,
        deps_cache: DependencyCache | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.platforms = platforms
        self.deps_cache = deps_cache or DependencyCache(settings.cache_dir)

    @property
    def work_dir(self) -> Path:
        return self.settings.cache_dir / "work"

    def fingerprint(self, toolchain: Toolchain) -> dict[str, str]:
        """Digests of the inputs a key's names stand for."""
        return {
            "toolchain": toolchain.manifest_sha256 or "",
            "lockfile": lockfile_digest(self.settings.workspace_dir) or "",
        }

    def _command_env(
        self, toolchain: Toolchain, request: BuildRequest, target_dir: Path
    ) -> dict[str, str]:
        env = dict(request.with_env(toolchain.env()).env)
        env["CARGO_TARGET_DIR"] = str(target_dir)
        env["CARGO_BUILD_JOBS"] = str(self.settings.build_jobs)
        return env

    def _run(
        self,
        cmd: list[str],
        cwd: Path,
        log_path: Path,
        env: dict[str, str],
        key: BuildKey,
        append: bool = False,
    ) -> CommandResult:
        """Run one cargo command, wrapping launch errors with the cell context."""
        try:
            return run_logged(
                cmd,
                cwd=cwd,
                log_path=log_path,
                env_override=env,
                timeout=self.settings.build_timeout,
                append=append,
            )
        except CommandExecutionError as e:
            raise BuildFailureError(
                f"Build {key.label} could not run: {e}",
                exit_code=e.exit_code,
                log_path=e.log_path,
                code=e.code,
                context=key.context(),
            ) from e

    def _deps(
        self,
        toolchain: Toolchain,
        unit: BuildUnit,
        feature_set: FeatureSet,
    ) -> tuple[DepsArtifact, bool]:
        key = BuildKey.for_deps(
            toolchain.name,
            unit.name,
            feature_set.name,
            fingerprint=self.fingerprint(toolchain),
        )
        digest = compute_cache_key(key)

        def build_dependencies(target_dir: Path) -> None:
            work = self.work_dir / f"deps-{digest[:16]}-{uuid.uuid4().hex[:8]}"
            log_path = self.settings.artifacts_dir / "logs" / f"deps-{digest[:16]}.log"
            try:
                src = copy_workspace(
                    self.settings.workspace_dir, work / "src", stub_sources=True
                )
                request = BuildRequest(
                    toolchain=toolchain.name, unit=unit.name, feature_set=feature_set
                )
                env = self._command_env(toolchain, request, target_dir)
                commands = compose_deps_commands(toolchain.cargo, unit.name, feature_set)
                for cmd in commands:
                    result = self._run(
                        cmd, src, log_path, env, key, append=cmd[1] != "build"
                    )
                    if not result.success:
                        raise BuildFailureError(
                            f"Dependency build {key.label} failed: "
                            f"{result.error_message}",
                            exit_code=result.exit_code,
                            log_path=result.log_path,
                            diagnostics=result.diagnostics(),
                            context=key.context(),
                        )
            finally:
                shutil.rmtree(work, ignore_errors=True)

        return self.deps_cache.get_or_build(key, build_dependencies)

    def build_deps(
        self,
        toolchain: Toolchain,
        unit: BuildUnit,
        feature_set: FeatureSet,
    ) -> DepsArtifact:
        """Build (or reuse) the dependency closure of a unit.

        Args:
            toolchain: Resolved toolchain.
            unit: Build unit.
            feature_set: Feature set selecting the closure.

        Returns:
            The cached DepsArtifact for (toolchain, unit, feature set).

        Raises:
            BuildFailureError: If compiling the dependencies fails.
        """
        artifact, _ = self._deps(toolchain, unit, feature_set)
        return artifact

    def build(
        self,
        toolchain: Toolchain,
        unit: BuildUnit,
        feature_set: FeatureSet,
        platform: Platform,
        with_dependencies: bool = True,
        lint: bool = False,
    ) -> BuildOutcome:
        """Build one cell of the matrix.

        With ``lint`` the unit is linted with all targets and warnings
        denied; a lint failure is reported in the outcome. Otherwise the
        unit's binary is compiled and collected into the artifacts store.

        Args:
            toolchain: Resolved toolchain.
            unit: Build unit.
            feature_set: Feature set to build with.
            platform: Target platform.
            with_dependencies: Start from the cached dependency artifact.
            lint: Lint instead of producing a binary.

        Returns:
            BuildOutcome for the cell.

        Raises:
            BuildFailureError: If a binary build fails, or dependencies fail.
            CrossToolchainBuildError: If the platform's cross toolchain fails.
        """
        kind = BuildKind.LINT if lint else BuildKind.BINARY
        request = self.platforms.apply_to(
            platform,
            BuildRequest(
                toolchain=toolchain.name, unit=unit.name, feature_set=feature_set
            ),
        )
        key = BuildKey(
            toolchain=toolchain.name,
            unit=unit.name,
            feature_set=feature_set.name,
            platform=platform.name,
            fingerprint=tuple(
                sorted({**self.fingerprint(toolchain), "kind": kind.value}.items())
            ),
        )
        cache_key = compute_cache_key(key)

        deps: DepsArtifact | None = None
        deps_hit: bool | None = None
        if with_dependencies:
            deps, deps_hit = self._deps(toolchain, unit, feature_set)

        with get_session(self.session_factory) as session:
            record = BuildRecord(
                toolchain=toolchain.name,
                unit=unit.name,
                feature_set=feature_set.name,
                platform=platform.name,
                kind=kind.value,
                cache_key=cache_key,
                deps_cache_key=deps.digest if deps else None,
                key_snapshot=key.to_dict(),
                is_cache_hit=bool(deps_hit),
                status=BuildStatus.PENDING.value,
            )
            session.add(record)
            session.flush()
            build_id = record.id

            out_dir = (
                self.settings.artifacts_dir
                / unit.name
                / toolchain.name
                / feature_set.name
                / platform.name
                / f"{build_id:08d}_{uuid.uuid4().hex[:8]}"
            )
            out_dir.mkdir(parents=True, exist_ok=True)
            log_path = out_dir / ("clippy.log" if lint else "build.log")
            record.build_dir = str(out_dir)
            record.log_path = str(log_path)
            record.mark_running()

        logger.info("Building %s %s (build %d)", kind.value, key.label, build_id)
        work = self.work_dir / f"{cache_key[:16]}-{uuid.uuid4().hex[:8]}"
        try:
            outcome = self._execute(
                toolchain, unit, feature_set, request, key, cache_key, kind,
                work, out_dir, log_path, deps,
            )
        except BuildFailureError as e:
            self._finish(build_id, None, error=e)
            raise
        except OSError as e:
            error = BuildFailureError(
                f"Build {key.label} could not prepare its workspace: {e}",
                log_path=log_path,
                code="workspace_error",
                context=key.context(),
            )
            self._finish(build_id, None, error=error)
            raise error from e
        finally:
            shutil.rmtree(work, ignore_errors=True)

        outcome.build_id = build_id
        outcome.deps_cache_hit = deps_hit
        self._finish(build_id, outcome)
        return outcome

    def _execute(
        self,
        toolchain: Toolchain,
        unit: BuildUnit,
        feature_set: FeatureSet,
        request: BuildRequest,
        key: BuildKey,
        cache_key: str,
        kind: BuildKind,
        work: Path,
        out_dir: Path,
        log_path: Path,
        deps: DepsArtifact | None,
    ) -> BuildOutcome:
        src = copy_workspace(self.settings.workspace_dir, work / "src")
        target_dir = work / "target"
        if deps is not None:
            copy_target_dir(deps, target_dir)
        env = self._command_env(toolchain, request, target_dir)

        if kind is BuildKind.LINT:
            cmd = compose_cargo_command(
                toolchain.cargo,
                "clippy",
                unit.name,
                feature_set,
                extra_args=CLIPPY_LINT_ARGS,
            )
            result = self._run(cmd, src, log_path, env, key)
            return BuildOutcome(
                key=key,
                cache_key=cache_key,
                kind=kind,
                success=result.success,
                log_path=log_path,
                diagnostics=None if result.success else result.diagnostics(),
            )

        cmd = compose_cargo_command(
            toolchain.cargo, "build", unit.name, feature_set, bin_name=unit.bin_name
        )
        result = self._run(cmd, src, log_path, env, key)
        if not result.success:
            raise BuildFailureError(
                f"Build {key.label} failed: {result.error_message}",
                exit_code=result.exit_code,
                log_path=log_path,
                diagnostics=result.diagnostics(),
                context=key.context(),
            )

        artifact = collect_binary(
            target_dir,
            unit.bin_name,
            out_dir,
            target=request.target,
            artifacts_root=self.settings.artifacts_dir,
        )
        if artifact is None:
            raise BuildFailureError(
                f"Build {key.label} produced no binary named {unit.bin_name}",
                log_path=log_path,
                code="missing_binary",
                context=key.context(),
            )

        manifest = generate_manifest(
            artifacts=[artifact],
            cache_key=cache_key,
            key=key.to_dict(),
            extra_metadata={
                "description": unit.description,
                "version": unit.version,
                "deps_cache_key": deps.digest if deps else None,
            },
        )
        manifest_path = write_manifest(manifest, out_dir / MANIFEST_FILENAME)

        return BuildOutcome(
            key=key,
            cache_key=cache_key,
            kind=kind,
            success=True,
            log_path=log_path,
            artifact=artifact,
            artifact_path=out_dir / artifact.filename,
            manifest_path=manifest_path,
        )

    def _finish(
        self,
        build_id: int,
        outcome: BuildOutcome | None,
        error: BuildFailureError | None = None,
    ) -> None:
        """Record the final state of a build."""
        with get_session(self.session_factory) as session:
            record = session.get(BuildRecord, build_id)
            if record is None:
                return
            if error is not None:
                record.mark_failed(error_type=error.code, message=error.message)
                return
            if outcome is None:
                return
            if not outcome.success:
                record.mark_failed(
                    error_type="lint_failed",
                    message=f"Lint failed, see {outcome.log_path}",
                )
                return
            if outcome.artifact is not None:
                _create_artifact_record(
                    session,
                    record,
                    outcome.artifact,
                    absolute_path=str(outcome.artifact_path),
                )
            record.mark_succeeded()
            logger.info("Build %d succeeded", build_id)


def _create_artifact_record(
    session: Session,
    build: BuildRecord,
    artifact_info: ArtifactInfo,
    absolute_path: str | None = None,
) -> Artifact:
    """Create an Artifact record from ArtifactInfo."""
    artifact = Artifact(
        build_id=build.id,
        kind=artifact_info.kind,
        relative_path=artifact_info.relative_path,
        absolute_path=absolute_path,
        filename=artifact_info.filename,
        size_bytes=artifact_info.size_bytes,
        sha256=artifact_info.sha256,
        labels=artifact_info.labels,
    )
    session.add(artifact)
    return artifact


def list_builds(
    session: Session,
    unit: str | None = None,
    toolchain: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        unit: Filter by unit name.
        toolchain: Filter by toolchain name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if unit is not None:
        stmt = stmt.where(BuildRecord.unit == unit)
    if toolchain is not None:
        stmt = stmt.where(BuildRecord.toolchain == toolchain)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = ["BuildGraph", "BuildOutcome", "list_builds"]
