"""Tests for the packaging package.

The vendor signer is never executed: ``run_logged`` is replaced by a
fake that writes a package into its working directory.
"""

from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from buildmatrix.builds.runner import CommandResult
from buildmatrix.errors import SigningError, SigningMaterialMissingError
from buildmatrix.packaging.manifest import DEFAULT_COPYRIGHT, build_manifest
from buildmatrix.packaging.service import MANIFEST_NAME, Packager
from buildmatrix.packaging.signing import SigningMaterial, compose_signer_command
from buildmatrix.platforms.base import Platform
from buildmatrix.platforms.junos import JUNOS_FREEBSD


class FakeSigner:
    def __init__(self, exit_code=0):
        self.exit_code = exit_code
        self.calls = []

    def __call__(self, cmd, cwd, log_path, env_override=None, timeout=None, append=False):
        self.calls.append({"cmd": list(cmd), "cwd": cwd})
        manifest = cmd[cmd.index("--jet") + 1]
        self.manifest = yaml.safe_load(Path(manifest).read_text())
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("signing\n")
        if self.exit_code == 0:
            (cwd / f"{self.manifest['basename']}.tgz").write_bytes(b"signed")
        now = datetime.now(timezone.utc)
        return CommandResult(
            success=self.exit_code == 0,
            exit_code=self.exit_code,
            log_path=log_path,
            started_at=now,
            finished_at=now,
            command=" ".join(cmd),
            error_message=None if self.exit_code == 0 else "exit code 1",
        )


@pytest.fixture
def certs(settings):
    settings.signing_cert.parent.mkdir(parents=True, exist_ok=True)
    settings.signing_cert.write_text("CERT")
    settings.signing_key.write_text("KEY")
    return SigningMaterial(cert=settings.signing_cert, key=settings.signing_key)


@pytest.fixture
def binary(tmp_path):
    path = tmp_path / "out" / "alpha"
    path.parent.mkdir()
    path.write_bytes(b"\x7fELF alpha")
    return path


@pytest.fixture
def packager(settings):
    return Packager(settings)


class TestBuildManifest:
    """Tests for build_manifest function."""

    def test_junos_manifest(self, alpha, binary):
        manifest = build_manifest(alpha, JUNOS_FREEBSD, binary)

        assert manifest.basename == "alpha-junos-freebsd"
        assert manifest.comment == "Alpha service"
        assert manifest.copyright == DEFAULT_COPYRIGHT
        assert (manifest.arch, manifest.abi) == ("x86", "64")
        (entry,) = manifest.files
        assert entry.source == str(binary)
        assert entry.destination == "/var/db/scripts/jet/alpha"

    def test_yaml_without_sources(self, alpha, binary):
        manifest = build_manifest(alpha, JUNOS_FREEBSD, binary)
        data = yaml.safe_load(manifest.to_yaml(with_sources=False))
        assert data["files"] == [{"destination": "/var/db/scripts/jet/alpha"}]
        assert str(binary) not in manifest.to_yaml(with_sources=False)

    def test_yaml_layout(self, alpha, binary):
        text = build_manifest(alpha, JUNOS_FREEBSD, binary, copyright="(c) me").to_yaml()
        assert text.startswith("basename: alpha-junos-freebsd\n")
        data = yaml.safe_load(text)
        assert data["copyright"] == "(c) me"
        assert data["files"][0]["destination"] == "/var/db/scripts/jet/alpha"

    def test_platform_without_conventions(self, alpha, binary):
        with pytest.raises(ValueError):
            build_manifest(alpha, Platform(name="native"), binary)


class TestSigningMaterial:
    """Tests for SigningMaterial and compose_signer_command."""

    def test_valid(self, certs):
        assert certs.validate() is certs

    @pytest.mark.parametrize("role", ["certificate", "key"])
    def test_missing(self, certs, role):
        missing = certs.cert if role == "certificate" else certs.key
        missing.unlink()
        with pytest.raises(SigningMaterialMissingError) as exc:
            certs.validate()
        assert exc.value.role == role
        assert exc.value.path == missing
        assert exc.value.code == "signing_material_missing"

    def test_signer_command(self, certs, tmp_path):
        cmd = compose_signer_command(
            "jetez", "1.2.3", tmp_path / "m.yaml", certs, tmp_path / "build"
        )
        assert cmd[:5] == ["jetez", "--source", ".", "--version", "1.2.3"]
        assert cmd[cmd.index("--cert") + 1] == str(certs.cert)
        assert cmd[cmd.index("--key") + 1] == str(certs.key)
        assert cmd[-1] == "--debug"


class TestPackager:
    """Tests for Packager.package."""

    def test_identity(self, packager, alpha, binary):
        with patch("buildmatrix.packaging.service.run_logged") as mock_run:
            result = packager.package(binary, alpha, Platform(name="native"))

        assert result.path == binary
        assert result.signed is False
        mock_run.assert_not_called()

    def test_missing_key_emits_nothing(self, packager, alpha, binary, certs):
        """Without key material nothing is signed and nothing is written."""
        certs.key.unlink()

        with patch("buildmatrix.packaging.service.run_logged") as mock_run:
            with pytest.raises(SigningMaterialMissingError):
                packager.package(binary, alpha, JUNOS_FREEBSD)

        mock_run.assert_not_called()
        assert not packager.packages_dir.exists()

    def test_signs_and_publishes(self, packager, alpha, binary, certs, settings):
        signer = FakeSigner()
        with patch("buildmatrix.packaging.service.run_logged", signer):
            result = packager.package(binary, alpha, JUNOS_FREEBSD)

        assert result.signed is True
        assert result.path.parent == packager.packages_dir
        assert result.path.name.startswith("alpha-junos-freebsd-1.2.3-")
        assert (result.path / "alpha-junos-freebsd.tgz").read_bytes() == b"signed"
        assert yaml.safe_load(result.manifest_path.read_text()) == signer.manifest
        assert signer.manifest["copyright"] == settings.package_copyright
        (call,) = signer.calls
        assert call["cmd"][0] == "jetez"
        assert call["cmd"][call["cmd"].index("--jet") + 1].endswith(MANIFEST_NAME)
        # No staging directory survives
        assert not list(packager.packages_dir.glob(".staging-*"))

    def test_existing_package_reused(self, packager, alpha, binary, certs):
        signer = FakeSigner()
        with patch("buildmatrix.packaging.service.run_logged", signer):
            first = packager.package(binary, alpha, JUNOS_FREEBSD)
            second = packager.package(binary, alpha, JUNOS_FREEBSD)

        assert first.path == second.path
        assert len(signer.calls) == 1

    def test_package_reused_across_build_directories(
        self, packager, alpha, binary, certs, tmp_path
    ):
        """Identical bytes from another build directory reuse the package."""
        copy = tmp_path / "other-build" / "alpha"
        copy.parent.mkdir()
        copy.write_bytes(binary.read_bytes())
        signer = FakeSigner()
        with patch("buildmatrix.packaging.service.run_logged", signer):
            first = packager.package(binary, alpha, JUNOS_FREEBSD)
            second = packager.package(copy, alpha, JUNOS_FREEBSD)

        assert second.path == first.path
        assert len(signer.calls) == 1

    def test_changed_binary_is_signed_again(self, packager, alpha, binary, certs):
        signer = FakeSigner()
        with patch("buildmatrix.packaging.service.run_logged", signer):
            first = packager.package(binary, alpha, JUNOS_FREEBSD)
            binary.write_bytes(b"\x7fELF alpha v2")
            second = packager.package(binary, alpha, JUNOS_FREEBSD)

        assert second.path != first.path
        assert len(signer.calls) == 2

    def test_signer_failure_leaves_nothing(self, packager, alpha, binary, certs):
        """A failed signer run publishes no package, signed or unsigned."""
        with patch("buildmatrix.packaging.service.run_logged", FakeSigner(exit_code=1)):
            with pytest.raises(SigningError) as exc:
                packager.package(binary, alpha, JUNOS_FREEBSD)

        assert exc.value.exit_code == 1
        assert exc.value.log_path.read_text() == "signing\n"
        assert exc.value.context == {"unit": "alpha", "platform": "junos-freebsd"}
        assert sorted(p.name for p in packager.packages_dir.iterdir()) == ["logs"]

    def test_preflight(self, packager, certs):
        packager.preflight(Platform(name="native"))
        packager.preflight(JUNOS_FREEBSD)
        certs.cert.unlink()
        with pytest.raises(SigningMaterialMissingError):
            packager.preflight(JUNOS_FREEBSD)
