"""Tests for builds/service.py module.

Tests the build graph with cargo replaced by a fake that writes the
files a real build would produce.
"""

import json
from unittest.mock import MagicMock, patch

import pytest

from buildmatrix.builds.features import FeatureSet
from buildmatrix.builds.models import Artifact, BuildRecord
from buildmatrix.builds.service import BuildGraph, list_builds
from buildmatrix.db import get_session
from buildmatrix.errors import BuildFailureError, CrossToolchainBuildError
from buildmatrix.platforms.cross import CrossToolchain
from buildmatrix.platforms.junos import GNU_TARGET, JUNOS_FREEBSD, RUST_TARGET
from buildmatrix.platforms.registry import PlatformRegistry
from buildmatrix.types import BuildKind, BuildStatus


@pytest.fixture
def platforms():
    return PlatformRegistry()


@pytest.fixture
def graph(settings, session_factory, platforms):
    return BuildGraph(settings, session_factory, platforms)


@pytest.fixture
def run_cargo(fake_cargo):
    with patch("buildmatrix.builds.service.run_logged", fake_cargo):
        yield fake_cargo


def deps_commands(fake):
    return [c for c in fake.commands("build") if "--bin" not in c]


def records(session_factory):
    with get_session(session_factory) as session:
        return list_builds(session)


class TestBuild:
    """Tests for BuildGraph.build on the native platform."""

    def test_alpha_x_y(self, graph, toolchain, alpha, platforms, run_cargo, settings):
        """Builds dependencies, then the binary, and records the result."""
        outcome = graph.build(
            toolchain, alpha, FeatureSet.parse("x+y"), platforms.native()
        )

        assert outcome.success is True
        assert outcome.kind is BuildKind.BINARY
        assert outcome.deps_cache_hit is False
        assert outcome.key.label == "(stable, alpha, x+y, native)"
        assert outcome.artifact_path.read_bytes().startswith(b"\x7fELF")
        assert outcome.artifact_path.parent.is_relative_to(settings.artifacts_dir)

        deps_cmd, bin_cmd = run_cargo.commands("build")
        assert deps_cmd == [
            toolchain.cargo,
            "build",
            "--locked",
            "--release",
            "-p",
            "alpha",
            "--no-default-features",
            "--features",
            "x,y",
        ]
        assert bin_cmd == [*deps_cmd, "--bin", "alpha"]

        env = run_cargo.calls[-1]["env"]
        assert env["CARGO"] == toolchain.cargo
        assert env["PATH"] == str(toolchain.bin_dir)
        assert env["CARGO_BUILD_JOBS"] == str(settings.build_jobs)
        assert "CARGO_BUILD_TARGET" not in env
        # Never builds in the caller's workspace
        assert run_cargo.calls[-1]["cwd"] != settings.workspace_dir

    def test_manifest_written(self, graph, toolchain, alpha, platforms, run_cargo):
        outcome = graph.build(toolchain, alpha, FeatureSet.default(), platforms.native())

        manifest = json.loads(outcome.manifest_path.read_text())
        assert manifest["cache_key"] == outcome.cache_key
        assert manifest["key"]["unit"] == "alpha"
        assert manifest["key"]["fingerprint"]["toolchain"] == toolchain.manifest_sha256
        assert manifest["metadata"]["version"] == "1.2.3"
        assert manifest["artifacts"][0]["filename"] == "alpha"

    def test_record_persisted(
        self, graph, toolchain, alpha, platforms, run_cargo, session_factory
    ):
        outcome = graph.build(toolchain, alpha, FeatureSet.default(), platforms.native())

        with get_session(session_factory) as session:
            record = session.get(BuildRecord, outcome.build_id)
            assert record.status == BuildStatus.SUCCEEDED.value
            assert record.kind == BuildKind.BINARY.value
            assert record.feature_set == "default"
            assert record.platform == "native"
            assert record.cache_key == outcome.cache_key
            assert record.deps_cache_key is not None
            artifacts = session.query(Artifact).filter_by(build_id=record.id).all()
            assert [a.filename for a in artifacts] == ["alpha"]

    def test_second_build_reuses_dependencies(
        self, graph, toolchain, alpha, platforms, run_cargo
    ):
        """Dependencies are compiled once per (toolchain, unit, feature set)."""
        fs = FeatureSet.parse("x+y")
        first = graph.build(toolchain, alpha, fs, platforms.native())
        second = graph.build(toolchain, alpha, fs, platforms.native())

        assert first.deps_cache_hit is False
        assert second.deps_cache_hit is True
        assert len(deps_commands(run_cargo)) == 1
        assert len(run_cargo.commands("build")) == 3
        # Each final build gets its own output directory
        assert first.artifact_path != second.artifact_path

    def test_feature_sets_have_separate_dependencies(
        self, graph, toolchain, alpha, platforms, run_cargo
    ):
        graph.build(toolchain, alpha, FeatureSet.parse("x"), platforms.native())
        graph.build(toolchain, alpha, FeatureSet.parse("y"), platforms.native())
        assert len(deps_commands(run_cargo)) == 2

    def test_without_dependencies(self, graph, toolchain, alpha, platforms, run_cargo):
        outcome = graph.build(
            toolchain,
            alpha,
            FeatureSet.default(),
            platforms.native(),
            with_dependencies=False,
        )
        assert outcome.deps_cache_hit is None
        assert deps_commands(run_cargo) == []

    def test_work_dirs_removed(self, graph, toolchain, alpha, platforms, run_cargo):
        graph.build(toolchain, alpha, FeatureSet.default(), platforms.native())
        assert list(graph.work_dir.iterdir()) == []

    def test_binary_failure_raises(
        self, graph, toolchain, alpha, platforms, run_cargo, session_factory
    ):
        """A failed compile names the cell and is recorded as failed."""
        run_cargo.fail = ("--bin",)

        with pytest.raises(BuildFailureError) as exc:
            graph.build(toolchain, alpha, FeatureSet.parse("x"), platforms.native())

        error = exc.value
        assert error.context == {
            "toolchain": "stable",
            "unit": "alpha",
            "feature_set": "x",
            "platform": "native",
        }
        assert error.exit_code == 101
        assert "warning: fake" in error.diagnostics
        assert error.log_path.exists()

        (record,) = records(session_factory)
        assert record.status == BuildStatus.FAILED.value
        assert record.error_type == "build_failed"

    def test_dependency_failure_is_not_cached(
        self, graph, toolchain, alpha, platforms, run_cargo, session_factory
    ):
        run_cargo.fail = ("x,y",)
        fs = FeatureSet.parse("x+y")

        with pytest.raises(BuildFailureError, match="Dependency build"):
            graph.build(toolchain, alpha, fs, platforms.native())
        assert records(session_factory) == []

        run_cargo.fail = ()
        outcome = graph.build(toolchain, alpha, fs, platforms.native())
        assert outcome.deps_cache_hit is False
        assert len(deps_commands(run_cargo)) == 2

    def test_missing_binary(self, graph, toolchain, alpha, platforms, run_cargo):
        """A build that emits no binary of the expected name fails."""
        with patch(
            "buildmatrix.builds.service.collect_binary", return_value=None
        ), pytest.raises(BuildFailureError) as exc:
            graph.build(toolchain, alpha, FeatureSet.default(), platforms.native())
        assert exc.value.code == "missing_binary"

    def test_build_deps(self, graph, toolchain, alpha, run_cargo):
        artifact = graph.build_deps(toolchain, alpha, FeatureSet.parse("x"))
        assert artifact.key.deps_only is True
        assert (artifact.target_dir / "release" / "deps" / "libserde.rlib").exists()
        again = graph.build_deps(toolchain, alpha, FeatureSet.parse("x"))
        assert again.path == artifact.path
        assert len(deps_commands(run_cargo)) == 1

    def test_deps_warm_build_and_lint_modes(self, graph, toolchain, alpha, run_cargo):
        """The cached closure covers both release builds and clippy's check mode."""
        graph.build_deps(toolchain, alpha, FeatureSet.parse("x"))
        graph.build_deps(toolchain, alpha, FeatureSet.parse("x"))

        (build_cmd,) = deps_commands(run_cargo)
        (check_cmd,) = run_cargo.commands("check")
        assert check_cmd == [*build_cmd[:1], "check", *build_cmd[2:], "--all-targets"]
        assert run_cargo.calls[1]["env"]["CARGO_TARGET_DIR"] == (
            run_cargo.calls[0]["env"]["CARGO_TARGET_DIR"]
        )


class TestLint:
    """Tests for lint runs through the build graph."""

    def test_lint_passes(self, graph, toolchain, alpha, platforms, run_cargo):
        outcome = graph.build(
            toolchain, alpha, FeatureSet.parse("y"), platforms.native(), lint=True
        )

        assert outcome.kind is BuildKind.LINT
        assert outcome.success is True
        assert outcome.artifact is None
        (clippy_cmd,) = run_cargo.commands("clippy")
        assert clippy_cmd[-4:] == ["--all-targets", "--", "--deny", "warnings"]
        assert outcome.log_path.name == "clippy.log"

    def test_lint_failure_is_reported_not_raised(
        self, graph, toolchain, alpha, platforms, run_cargo, session_factory
    ):
        run_cargo.fail = ("clippy",)

        outcome = graph.build(
            toolchain, alpha, FeatureSet.default(), platforms.native(), lint=True
        )

        assert outcome.success is False
        assert "warning: fake" in outcome.diagnostics
        (record,) = records(session_factory)
        assert record.status == BuildStatus.FAILED.value
        assert record.error_type == "lint_failed"

    def test_lint_and_binary_keys_differ(
        self, graph, toolchain, alpha, platforms, run_cargo
    ):
        fs = FeatureSet.default()
        lint = graph.build(toolchain, alpha, fs, platforms.native(), lint=True)
        binary = graph.build(toolchain, alpha, fs, platforms.native())
        assert lint.cache_key != binary.cache_key
        # Both share one dependency artifact
        assert len(deps_commands(run_cargo)) == 1


class TestForeignPlatformBuild:
    """Tests for cross builds."""

    @pytest.fixture
    def cross_builder(self, tmp_path):
        builder = MagicMock()
        builder.ensure.return_value = CrossToolchain(
            platform=JUNOS_FREEBSD.name,
            root_dir=tmp_path / "cross",
            gnu_target=GNU_TARGET,
        )
        return builder

    @pytest.fixture
    def platforms(self, cross_builder):
        registry = PlatformRegistry(cross_builder)
        registry.register_foreign(JUNOS_FREEBSD)
        return registry

    def test_cross_environment(self, graph, toolchain, alpha, platforms, run_cargo):
        outcome = graph.build(
            toolchain, alpha, FeatureSet.default(), platforms.get("junos-freebsd")
        )

        env = run_cargo.calls[-1]["env"]
        assert env["CARGO_BUILD_TARGET"] == RUST_TARGET
        assert env["CARGO_TARGET_X86_64_UNKNOWN_FREEBSD_LINKER"].endswith(
            "toolchain/bin/x86_64-unknown-freebsd12-gcc"
        )
        assert env["RUSTFLAGS"] == '--cfg target_platform="junos-freebsd"'
        assert outcome.artifact.labels == [RUST_TARGET]
        assert outcome.key.platform == "junos-freebsd"

    def test_dependencies_built_for_host(
        self, graph, toolchain, alpha, platforms, run_cargo
    ):
        graph.build(toolchain, alpha, FeatureSet.default(), platforms.get("junos-freebsd"))
        deps_env = run_cargo.calls[0]["env"]
        assert "CARGO_BUILD_TARGET" not in deps_env
        assert "RUSTFLAGS" not in deps_env

    def test_host_dependencies_sit_beside_the_target_tree(
        self, graph, toolchain, alpha, platforms, run_cargo
    ):
        """Cached deps hold host output only; cross output goes under the triple."""
        graph.build(toolchain, alpha, FeatureSet.default(), platforms.get("junos-freebsd"))
        deps = graph.build_deps(toolchain, alpha, FeatureSet.default())

        assert (deps.target_dir / "release" / "deps" / "libserde.rlib").exists()
        assert not (deps.target_dir / RUST_TARGET).exists()
        assert len(deps_commands(run_cargo)) == 1
        assert run_cargo.calls[-1]["env"]["CARGO_BUILD_TARGET"] == RUST_TARGET

    def test_cross_failure_isolated(
        self, graph, toolchain, alpha, platforms, cross_builder, run_cargo
    ):
        """A broken cross toolchain fails its platform, native keeps working."""
        cross_builder.ensure.side_effect = CrossToolchainBuildError(
            "junos-freebsd", "build-gcc", "make failed"
        )
        junos = platforms.get("junos-freebsd")

        with pytest.raises(CrossToolchainBuildError):
            graph.build(toolchain, alpha, FeatureSet.default(), junos)
        with pytest.raises(CrossToolchainBuildError):
            graph.build(toolchain, alpha, FeatureSet.default(), junos)

        assert cross_builder.ensure.call_count == 1
        outcome = graph.build(toolchain, alpha, FeatureSet.default(), platforms.native())
        assert outcome.success is True


class TestListBuilds:
    """Tests for list_builds function."""

    def test_filters(self, graph, toolchain, alpha, platforms, run_cargo, session_factory):
        graph.build(toolchain, alpha, FeatureSet.default(), platforms.native())
        run_cargo.fail = ("clippy",)
        graph.build(toolchain, alpha, FeatureSet.default(), platforms.native(), lint=True)

        with get_session(session_factory) as session:
            assert len(list_builds(session)) == 2
            assert len(list_builds(session, unit="alpha", toolchain="stable")) == 2
            assert list_builds(session, unit="beta") == []
            failed = list_builds(session, status=BuildStatus.FAILED)
            assert [b.kind for b in failed] == ["lint"]
            newest = list_builds(session, limit=1)
            assert newest[0].kind == "lint"
