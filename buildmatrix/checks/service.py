"""Checks aggregator.

This module provides:
- Workspace-wide checks (dependency audit, policy/license, formatting)
- Lint over the full unit x feature-set matrix
- Aggregation into a CheckReport without short-circuiting

All checks for a toolchain are dispatched to a thread pool; a failing
or crashing cell is recorded and never cancels its siblings.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING

from buildmatrix.builds.features import FeatureSet, expand
from buildmatrix.builds.runner import CommandExecutionError, run_logged
from buildmatrix.checks.report import CheckReport, CheckResult
from buildmatrix.errors import BuildMatrixError
from buildmatrix.types import CheckKind, CheckStatus

if TYPE_CHECKING:
    from buildmatrix.builds.service import BuildGraph
    from buildmatrix.config import Settings
    from buildmatrix.platforms.registry import PlatformRegistry
    from buildmatrix.toolchains.service import Toolchain
    from buildmatrix.units.schema import BuildUnit

logger = logging.getLogger(__name__)

WORKSPACE_CHECKS = (CheckKind.AUDIT, CheckKind.DENY, CheckKind.FMT)


def compose_check_command(
    kind: CheckKind,
    cargo: str,
    advisory_db: Path | None = None,
) -> list[str]:
    """Compose the command for a workspace-wide check.

    Args:
        kind: audit, deny or fmt.
        cargo: Path to the cargo executable.
        advisory_db: Local advisory database for offline audits.

    Returns:
        Command as list of strings.
    """
    if kind is CheckKind.AUDIT:
        cmd = [cargo, "audit"]
        if advisory_db is not None:
            cmd.extend(["--db", str(advisory_db), "--no-fetch"])
        return cmd
    if kind is CheckKind.DENY:
        return [cargo, "deny", "check"]
    if kind is CheckKind.FMT:
        return [cargo, "fmt", "--all", "--", "--check"]
    raise ValueError(f"{kind.value} is not a workspace check")


class ChecksAggregator:
    """Run every check for a toolchain and roll results into a report."""

    def __init__(
        self,
        settings: Settings,
        build_graph: BuildGraph,
        platforms: PlatformRegistry,
    ) -> None:
        self.settings = settings
        self.build_graph = build_graph
        self.platforms = platforms

    def log_dir(self, toolchain: Toolchain) -> Path:
        return self.settings.artifacts_dir / "checks" / toolchain.name

    def run_workspace_check(self, kind: CheckKind, toolchain: Toolchain) -> CheckResult:
        """Run one workspace-wide check."""
        cmd = compose_check_command(kind, toolchain.cargo, self.settings.advisory_db)
        log_path = self.log_dir(toolchain) / f"{kind.value}.log"
        try:
            result = run_logged(
                cmd,
                cwd=self.settings.workspace_dir,
                log_path=log_path,
                env_override=toolchain.env(),
                timeout=self.settings.build_timeout,
            )
        except CommandExecutionError as e:
            return CheckResult.failure(kind, str(e), log_path=str(log_path))

        if result.success:
            return CheckResult(
                kind=kind, status=CheckStatus.PASSED, log_path=str(log_path)
            )
        return CheckResult.failure(
            kind,
            result.diagnostics() or result.error_message or "check failed",
            log_path=str(log_path),
        )

    def run_lint(
        self,
        toolchain: Toolchain,
        unit: BuildUnit,
        feature_set: FeatureSet,
    ) -> CheckResult:
        """Lint one (unit, feature set) cell against its cached dependencies."""
        outcome = self.build_graph.build(
            toolchain,
            unit,
            feature_set,
            self.platforms.native(),
            with_dependencies=True,
            lint=True,
        )
        return CheckResult(
            kind=CheckKind.CLIPPY,
            status=CheckStatus.PASSED if outcome.success else CheckStatus.FAILED,
            unit=unit.name,
            feature_set=feature_set.name,
            log_path=str(outcome.log_path),
            message=outcome.diagnostics,
        )

    def run_all(self, toolchain: Toolchain, units: list[BuildUnit]) -> CheckReport:
        """Run every check for a toolchain.

        Args:
            toolchain: Resolved toolchain.
            units: Declared build units.

        Returns:
            CheckReport with one result per check and per lint cell.
        """
        report = CheckReport(toolchain=toolchain.name)
        max_workers = max(1, self.settings.max_concurrent_builds)

        with ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="check"
        ) as pool:
            workspace_futures: dict[CheckKind, Future[CheckResult]] = {
                kind: pool.submit(self.run_workspace_check, kind, toolchain)
                for kind in WORKSPACE_CHECKS
            }
            lint_futures: dict[tuple[str, str], Future[CheckResult]] = {}
            for unit in units:
                for feature_set in expand(unit.features):
                    lint_futures[(unit.name, feature_set.name)] = pool.submit(
                        self.run_lint, toolchain, unit, feature_set
                    )

            for kind, future in workspace_futures.items():
                report.workspace[kind] = _collect(future, kind)

            for (unit_name, fs_name), future in lint_futures.items():
                report.lint.setdefault(unit_name, {})[fs_name] = _collect(
                    future, CheckKind.CLIPPY, unit_name, fs_name
                )

        failed = report.failed_cells()
        if failed:
            logger.warning(
                "%d of %d checks failed for %s",
                len(failed),
                len(report.results()),
                toolchain.name,
            )
        else:
            logger.info(
                "All %d checks passed for %s", len(report.results()), toolchain.name
            )
        return report


def _collect(
    future: Future[CheckResult],
    kind: CheckKind,
    unit: str | None = None,
    feature_set: str | None = None,
) -> CheckResult:
    """Resolve a check future, turning errors into a failed result."""
    try:
        return future.result()
    except BuildMatrixError as e:
        logger.error("Check %s failed: %s", kind.value, e)
        log_path = getattr(e, "log_path", None)
        return CheckResult.failure(
            kind,
            str(e),
            unit=unit,
            feature_set=feature_set,
            log_path=str(log_path) if log_path else None,
        )
    except Exception as e:
        logger.exception("Check %s crashed", kind.value)
        return CheckResult.failure(
            kind, f"{type(e).__name__}: {e}", unit=unit, feature_set=feature_set
        )


__all__ = ["WORKSPACE_CHECKS", "ChecksAggregator", "compose_check_command"]
