"""Tests for the platforms package (base types, registry, Junos descriptor)."""

import os
from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from buildmatrix.builds.features import FeatureSet
from buildmatrix.errors import (
    ConfigurationError,
    CrossToolchainBuildError,
    UnknownPlatformError,
)
from buildmatrix.platforms.base import NATIVE_PLATFORM, BuildRequest, Platform
from buildmatrix.platforms.cross import CrossToolchain
from buildmatrix.platforms.junos import (
    GNU_TARGET,
    JUNOS_FREEBSD,
    PLATFORM_NAME,
    RUST_TARGET,
)
from buildmatrix.platforms.registry import PlatformRegistry
from buildmatrix.types import PackagerKind

OTHER = replace(
    JUNOS_FREEBSD,
    name="other-bsd",
    rust_target="aarch64-unknown-freebsd",
    packager=PackagerKind.IDENTITY,
)


@pytest.fixture
def request_():
    return BuildRequest(toolchain="stable", unit="alpha", feature_set=FeatureSet.default())


@pytest.fixture
def cross_builder(tmp_path):
    def ensure(platform, spec):
        return CrossToolchain(
            platform=platform, root_dir=tmp_path / platform, gnu_target=spec.gnu_target
        )

    return MagicMock(ensure=MagicMock(side_effect=ensure))


@pytest.fixture
def registry(cross_builder):
    registry = PlatformRegistry(cross_builder)
    registry.register_foreign(JUNOS_FREEBSD)
    return registry


class TestPlatform:
    """Tests for the Platform descriptor."""

    def test_native(self):
        native = Platform(name=NATIVE_PLATFORM)
        assert native.is_native
        assert native.linker_env_var is None
        assert native.package_name("alpha") == "alpha"

    def test_junos_descriptor(self):
        assert JUNOS_FREEBSD.name == PLATFORM_NAME == "junos-freebsd"
        assert JUNOS_FREEBSD.rust_target == "x86_64-unknown-freebsd"
        assert JUNOS_FREEBSD.cross_toolchain.gnu_target == "x86_64-unknown-freebsd12"
        assert JUNOS_FREEBSD.packager is PackagerKind.JET
        assert JUNOS_FREEBSD.install_dir == "/var/db/scripts/jet"

    def test_linker_env_var(self):
        assert (
            JUNOS_FREEBSD.linker_env_var == "CARGO_TARGET_X86_64_UNKNOWN_FREEBSD_LINKER"
        )

    def test_cfg_flag_and_package_name(self):
        assert JUNOS_FREEBSD.cfg_flag == '--cfg target_platform="junos-freebsd"'
        assert JUNOS_FREEBSD.package_name("alpha") == "alpha-junos-freebsd"

    def test_to_dict(self):
        data = JUNOS_FREEBSD.to_dict()
        assert data["gnu_target"] == GNU_TARGET
        assert data["packager"] == "jet"
        assert data["arch"] == "x86"
        assert data["abi"] == "64"

    def test_cross_sources_pinned_by_version(self):
        spec = JUNOS_FREEBSD.cross_toolchain
        assert spec.binutils.version == "2.32"
        assert spec.gcc.version == "6.4.0"
        assert [p.name for p in spec.gcc_prerequisites] == ["mpfr", "gmp", "mpc"]
        assert spec.sysroot.url.endswith("12.4-RELEASE/base.txz")


class TestBuildRequest:
    """Tests for BuildRequest.with_env."""

    def test_returns_new_request(self, request_):
        updated = request_.with_env({"CARGO_BUILD_TARGET": RUST_TARGET})
        assert updated.env == {"CARGO_BUILD_TARGET": RUST_TARGET}
        assert dict(request_.env) == {}

    def test_path_prepended(self, request_):
        updated = request_.with_env({"PATH": "/cross/bin"}).with_env({"PATH": "/tc/bin"})
        assert updated.env["PATH"] == f"/tc/bin{os.pathsep}/cross/bin"

    def test_rustflags_appended(self, request_):
        updated = request_.with_env({"RUSTFLAGS": "-C a"}).with_env({"RUSTFLAGS": "-C b"})
        assert updated.env["RUSTFLAGS"] == "-C a -C b"

    def test_env_is_read_only(self, request_):
        with pytest.raises(TypeError):
            request_.env["X"] = "1"


class TestPlatformRegistry:
    """Tests for PlatformRegistry."""

    def test_native_only_by_default(self):
        registry = PlatformRegistry()
        assert registry.names() == [NATIVE_PLATFORM]
        assert registry.get("native").is_native
        assert registry.cross_targets() == []

    def test_register_and_lookup(self, registry):
        assert registry.get("junos-freebsd") is JUNOS_FREEBSD
        assert registry.names() == ["native", "junos-freebsd"]
        assert registry.foreign() == [JUNOS_FREEBSD]
        assert registry.cross_targets() == [RUST_TARGET]

    @pytest.mark.parametrize("name", ["native", "junos-freebsd"])
    def test_duplicate_name(self, registry, name):
        with pytest.raises(ConfigurationError) as exc:
            registry.register_foreign(replace(JUNOS_FREEBSD, name=name))
        assert exc.value.code == "duplicate_platform"

    def test_foreign_needs_target(self, registry):
        with pytest.raises(ConfigurationError):
            registry.register_foreign(Platform(name="mystery"))

    def test_unknown_platform(self, registry):
        with pytest.raises(UnknownPlatformError) as exc:
            registry.get("windows")
        assert exc.value.code == "unknown_platform"
        assert "native, junos-freebsd" in exc.value.message

    def test_native_apply_is_identity(self, registry, request_, cross_builder):
        assert registry.apply_to(registry.native(), request_) is request_
        cross_builder.ensure.assert_not_called()

    def test_foreign_apply(self, registry, request_, tmp_path):
        """Target, linker, cfg flag and cross bin dir are injected."""
        result = registry.apply_to(JUNOS_FREEBSD, request_)

        cross_bin = tmp_path / "junos-freebsd" / "toolchain" / "bin"
        assert result.platform == "junos-freebsd"
        assert result.target == RUST_TARGET
        assert result.env == {
            "RUSTFLAGS": '--cfg target_platform="junos-freebsd"',
            "CARGO_BUILD_TARGET": RUST_TARGET,
            "CARGO_TARGET_X86_64_UNKNOWN_FREEBSD_LINKER": str(
                cross_bin / f"{GNU_TARGET}-gcc"
            ),
            "PATH": str(cross_bin),
        }
        assert dict(request_.env) == {}
        assert request_.platform == NATIVE_PLATFORM

    def test_foreign_without_cross_toolchain(self, request_):
        registry = PlatformRegistry()
        registry.register_foreign(replace(OTHER, cross_toolchain=None))

        result = registry.apply_to(registry.get("other-bsd"), request_)

        assert result.env["CARGO_BUILD_TARGET"] == "aarch64-unknown-freebsd"
        assert "PATH" not in result.env

    def test_system_linker_without_cross_toolchain(self, request_):
        """A configured linker is used when nothing is bootstrapped."""
        registry = PlatformRegistry()
        registry.register_foreign(
            Platform(
                name="arm",
                rust_target="armv7-unknown-linux-gnueabihf",
                linker="/usr/bin/arm-linux-gnueabihf-gcc",
            )
        )

        result = registry.apply_to(registry.get("arm"), request_)

        assert result.env["CARGO_TARGET_ARMV7_UNKNOWN_LINUX_GNUEABIHF_LINKER"] == (
            "/usr/bin/arm-linux-gnueabihf-gcc"
        )
        assert "PATH" not in result.env

    def test_configured_linker_wins_over_cross_toolchain(
        self, registry, request_, tmp_path
    ):
        registry.register_foreign(replace(OTHER, linker="/opt/bin/cc"))

        result = registry.apply_to(registry.get("other-bsd"), request_)

        assert result.env["CARGO_TARGET_AARCH64_UNKNOWN_FREEBSD_LINKER"] == "/opt/bin/cc"
        assert result.env["PATH"] == str(tmp_path / "other-bsd" / "toolchain" / "bin")

    def test_failure_is_memoized(self, registry, cross_builder, request_):
        """A failed bootstrap disables that platform only."""
        registry.register_foreign(OTHER)
        error = CrossToolchainBuildError("junos-freebsd", "build-gcc", "make failed")
        good = cross_builder.ensure.side_effect

        def ensure(platform, spec):
            if platform == "junos-freebsd":
                raise error
            return good(platform, spec)

        cross_builder.ensure.side_effect = ensure

        for _ in range(2):
            with pytest.raises(CrossToolchainBuildError) as exc:
                registry.apply_to(JUNOS_FREEBSD, request_)
            assert exc.value is error

        junos_calls = [
            c for c in cross_builder.ensure.call_args_list if c.args[0] == "junos-freebsd"
        ]
        assert len(junos_calls) == 1
        assert registry.failure("junos-freebsd") is error
        assert registry.failure("other-bsd") is None
        assert registry.apply_to(OTHER, request_).platform == "other-bsd"
        assert registry.apply_to(registry.native(), request_) is request_

    def test_missing_builder(self, request_):
        registry = PlatformRegistry()
        registry.register_foreign(JUNOS_FREEBSD)
        with pytest.raises(ConfigurationError):
            registry.apply_to(JUNOS_FREEBSD, request_)

    def test_cross_root_is_path(self, registry):
        toolchain = registry.ensure_cross_toolchain(JUNOS_FREEBSD)
        assert isinstance(toolchain.linker, Path)
        assert registry.ensure_cross_toolchain(registry.native()) is None
