"""Pydantic models for check reports.

A CheckReport holds the outcome of every check run for one toolchain:
workspace-wide checks (audit, deny, fmt) once each, and lint once per
build unit and feature set.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from buildmatrix.types import CheckKind, CheckStatus


class CheckResult(BaseModel):
    """Outcome of a single check.

    Attributes:
        kind: Check kind.
        status: passed or failed.
        unit: Build unit (lint only).
        feature_set: Feature set name (lint only).
        log_path: Captured tool output.
        message: Error or diagnostic summary on failure.
    """

    kind: CheckKind
    status: CheckStatus
    unit: str | None = None
    feature_set: str | None = None
    log_path: str | None = None
    message: str | None = None

    @property
    def passed(self) -> bool:
        return self.status == CheckStatus.PASSED

    @classmethod
    def failure(
        cls,
        kind: CheckKind,
        message: str,
        unit: str | None = None,
        feature_set: str | None = None,
        log_path: str | None = None,
    ) -> CheckResult:
        """Build a failed result."""
        return cls(
            kind=kind,
            status=CheckStatus.FAILED,
            unit=unit,
            feature_set=feature_set,
            log_path=log_path,
            message=message,
        )


class CheckReport(BaseModel):
    """Hierarchical check report for one toolchain.

    Attributes:
        toolchain: Toolchain the checks ran under.
        workspace: Workspace-wide results keyed by kind.
        lint: Lint results keyed by unit, then feature set.
    """

    toolchain: str
    workspace: dict[CheckKind, CheckResult] = Field(default_factory=dict)
    lint: dict[str, dict[str, CheckResult]] = Field(default_factory=dict)

    def results(self) -> list[CheckResult]:
        """All results, workspace checks first."""
        cells = list(self.workspace.values())
        for by_feature_set in self.lint.values():
            cells.extend(by_feature_set.values())
        return cells

    @property
    def passed(self) -> bool:
        """True when every check passed."""
        return all(r.passed for r in self.results())

    def failed_cells(self) -> list[CheckResult]:
        """Every failed check, in report order."""
        return [r for r in self.results() if not r.passed]

    def to_tree(self) -> dict[str, Any]:
        """Render as toolchain -> kind -> [unit -> feature set] -> status."""
        kinds: dict[str, Any] = {
            kind.value: result.status.value
            for kind, result in sorted(
                self.workspace.items(), key=lambda kv: kv[0].value
            )
        }
        kinds[CheckKind.CLIPPY.value] = {
            unit: {fs: result.status.value for fs, result in by_fs.items()}
            for unit, by_fs in sorted(self.lint.items())
        }
        return {self.toolchain: kinds}


__all__ = ["CheckReport", "CheckResult"]
