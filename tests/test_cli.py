"""Tests for the CLI.

The orchestrator is either a mock or a real registry over the temporary
settings from conftest; nothing touches the network or runs cargo.
"""

import json
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from buildmatrix import __version__
from buildmatrix.builds.features import FeatureSet, expand
from buildmatrix.builds.models import BuildRecord
from buildmatrix.checks.report import CheckReport, CheckResult
from buildmatrix.cli import app
from buildmatrix.db import get_session
from buildmatrix.errors import BuildFailureError, UnknownPlatformError
from buildmatrix.orchestrator import Orchestrator, create_registry
from buildmatrix.platforms.junos import JUNOS_FREEBSD
from buildmatrix.types import CheckKind, CheckStatus

runner = CliRunner()


@pytest.fixture
def mock_orchestrator():
    orchestrator = MagicMock()
    with patch("buildmatrix.cli._orchestrator", return_value=orchestrator):
        yield orchestrator


@pytest.fixture
def real_orchestrator(settings, session_factory):
    orchestrator = Orchestrator(create_registry(settings, session_factory=session_factory))
    with patch("buildmatrix.cli._orchestrator", return_value=orchestrator):
        yield orchestrator


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help(self) -> None:
        """--help lists the top-level commands."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("build", "check", "matrix", "toolchains", "platforms"):
            assert command in result.stdout

    def test_version_flag(self) -> None:
        """--version prints the version and exits 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestCLIConfig:
    """Test the config command."""

    def test_config_json_reflects_environment(self, monkeypatch, tmp_path) -> None:
        """BUILDMATRIX_ variables show up in config --json."""
        monkeypatch.setenv("BUILDMATRIX_CACHE_DIR", str(tmp_path / "cache"))
        monkeypatch.setenv("BUILDMATRIX_OFFLINE", "true")
        monkeypatch.setenv("BUILDMATRIX_MSRV_VERSION", "1.70")

        result = runner.invoke(app, ["config", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["cache_dir"] == str(tmp_path / "cache")
        assert data["offline"] is True
        assert data["msrv_version"] == "1.70"
        assert data["signer_path"] == "jetez"

    def test_config_human(self) -> None:
        """Plain config output names every section."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        for section in ("Paths:", "Toolchains:", "Signing:", "Timeouts"):
            assert section in result.stdout


class TestCLIBuild:
    """Test the build command."""

    def test_build_json(self, mock_orchestrator) -> None:
        """build --json prints the result and passes options through."""
        mock_orchestrator.build.return_value.to_dict.return_value = {
            "build": {"success": True},
            "package": {"signed": False},
        }

        result = runner.invoke(
            app, ["build", "alpha", "-t", "nightly", "-f", "x+y", "--json"]
        )

        assert result.exit_code == 0
        assert json.loads(result.stdout)["package"] == {"signed": False}
        mock_orchestrator.build.assert_called_once_with(
            "alpha", platform=None, toolchain="nightly", feature_set="x+y"
        )

    def test_build_error_json(self, mock_orchestrator) -> None:
        """A domain error exits 1 with a structured error object."""
        mock_orchestrator.build.side_effect = UnknownPlatformError("windows", ["native"])

        result = runner.invoke(app, ["build", "alpha", "-p", "windows", "--json"])

        assert result.exit_code == 1
        error = json.loads(result.stdout)["error"]
        assert error["code"] == "unknown_platform"
        assert error["context"] == {"platform": "windows"}

    def test_build_failure_shows_log(self, mock_orchestrator, tmp_path) -> None:
        """The human error output points at the log file."""
        mock_orchestrator.build.side_effect = BuildFailureError(
            "failed", exit_code=101, log_path=tmp_path / "b.log"
        )

        result = runner.invoke(app, ["build", "alpha"])

        assert result.exit_code == 1
        assert "build_failed" in result.stdout
        assert "b.log" in result.stdout


class TestCLICheck:
    """Test the check command."""

    def _report(self, status: CheckStatus) -> CheckReport:
        return CheckReport(
            toolchain="stable",
            workspace={
                CheckKind.FMT: CheckResult(kind=CheckKind.FMT, status=CheckStatus.PASSED)
            },
            lint={
                "alpha": {
                    "default": CheckResult(
                        kind=CheckKind.CLIPPY,
                        status=status,
                        unit="alpha",
                        feature_set="default",
                    )
                }
            },
        )

    def test_check_passes(self, mock_orchestrator) -> None:
        """All checks passing exits 0."""
        mock_orchestrator.check.return_value = self._report(CheckStatus.PASSED)

        result = runner.invoke(app, ["check", "stable", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "stable": {"fmt": "passed", "clippy": {"alpha": {"default": "passed"}}}
        }

    def test_check_failure_exits_nonzero(self, mock_orchestrator) -> None:
        """Any failed check exits 1 after the full report is printed."""
        mock_orchestrator.check.return_value = self._report(CheckStatus.FAILED)

        result = runner.invoke(app, ["check", "msrv"])

        assert result.exit_code == 1
        assert "fmt: passed" in result.stdout
        assert "alpha default: failed" in result.stdout
        assert "1 check(s) failed" in result.stdout
        mock_orchestrator.check.assert_called_once_with("msrv")


class TestCLIMatrix:
    """Test the matrix command."""

    def test_matrix_json(self, mock_orchestrator) -> None:
        """matrix --json lists names and flags."""
        mock_orchestrator.matrix.return_value = expand(["x"])

        result = runner.invoke(app, ["matrix", "alpha", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == [
            {"name": "default", "flags": None},
            {"name": "__empty", "flags": []},
            {"name": "x", "flags": ["x"]},
        ]

    def test_matrix_human(self, mock_orchestrator) -> None:
        """The plain listing counts feature sets."""
        mock_orchestrator.matrix.return_value = [FeatureSet.default()]

        result = runner.invoke(app, ["matrix", "alpha"])

        assert result.exit_code == 0
        assert "alpha: 1 feature set(s)" in result.stdout


class TestCLIInspection:
    """Test the list and cache commands against a real registry."""

    def test_platforms_list(self, real_orchestrator) -> None:
        """platforms list includes the native and Junos platforms."""
        result = runner.invoke(app, ["platforms", "list", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [p["name"] for p in data] == ["native", "junos-freebsd"]
        assert data[1]["packager"] == "jet"

    def test_platforms_list_for_unit(self, mock_orchestrator) -> None:
        """--unit lists only the platforms the unit is offered for."""
        mock_orchestrator.unit_platforms.return_value = [JUNOS_FREEBSD]

        result = runner.invoke(app, ["platforms", "list", "--unit", "alpha", "--json"])

        assert result.exit_code == 0
        assert [p["name"] for p in json.loads(result.stdout)] == ["junos-freebsd"]
        mock_orchestrator.unit_platforms.assert_called_once_with("alpha")

    def test_platforms_list_for_unit_error(self, mock_orchestrator) -> None:
        mock_orchestrator.unit_platforms.side_effect = UnknownPlatformError(
            "solaris", ["native"]
        )

        result = runner.invoke(app, ["platforms", "list", "-u", "alpha"])

        assert result.exit_code == 1
        assert "unknown_platform" in result.stdout

    def test_toolchains_list_empty(self, real_orchestrator) -> None:
        """No toolchain has been resolved yet."""
        result = runner.invoke(app, ["toolchains", "list", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_builds_list(self, real_orchestrator, session_factory) -> None:
        """Recorded builds are listed and filtered by status."""
        with get_session(session_factory) as session:
            session.add(
                BuildRecord(
                    toolchain="stable",
                    unit="alpha",
                    feature_set="x",
                    platform="native",
                    kind="binary",
                    status="failed",
                    cache_key="k",
                    error_message="boom",
                )
            )

        result = runner.invoke(app, ["builds", "list", "--json"])
        assert result.exit_code == 0
        (record,) = json.loads(result.stdout)
        assert (record["unit"], record["status"]) == ("alpha", "failed")

        result = runner.invoke(app, ["builds", "list", "-s", "succeeded", "--json"])
        assert json.loads(result.stdout) == []

    def test_builds_list_invalid_status(self, real_orchestrator) -> None:
        """An unknown status is rejected with the valid values."""
        result = runner.invoke(app, ["builds", "list", "--status", "exploded"])
        assert result.exit_code == 1
        assert "Invalid status" in result.stdout
        assert "succeeded" in result.stdout

    def test_cache_info(self, real_orchestrator) -> None:
        """cache info reports sizes and dependency entries."""
        result = runner.invoke(app, ["cache", "info", "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["deps_entries"] == []
        assert data["total_size_bytes"] == 0

    def test_cache_prune_dry_run(self, real_orchestrator) -> None:
        """Nothing to prune in an empty cache."""
        result = runner.invoke(app, ["cache", "prune", "--dry-run", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {
            "dry_run": True,
            "deps": [],
            "toolchains": [],
        }
