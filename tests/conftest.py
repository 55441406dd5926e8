"""Shared fixtures for buildmatrix tests.

Commands are never really executed: ``run_logged`` is patched with a
fake that records invocations and materializes the files cargo would
have written.
"""

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from buildmatrix.builds.runner import CommandResult
from buildmatrix.config import Settings
from buildmatrix.db import create_all_tables, get_engine, get_session_factory
from buildmatrix.toolchains.service import Toolchain
from buildmatrix.units.schema import BuildUnit


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Create a minimal two-unit cargo workspace on disk."""
    root = tmp_path / "workspace"
    (root / "alpha" / "src").mkdir(parents=True)
    (root / "beta" / "src" / "bin").mkdir(parents=True)
    (root / "Cargo.toml").write_text('[workspace]\nmembers = ["alpha", "beta"]\n')
    (root / "Cargo.lock").write_text("# lockfile v1\n")
    (root / "alpha" / "Cargo.toml").write_text('[package]\nname = "alpha"\n')
    (root / "alpha" / "src" / "main.rs").write_text('fn main() { println!("a"); }\n')
    (root / "alpha" / "src" / "lib.rs").write_text("pub fn answer() -> u8 { 42 }\n")
    (root / "beta" / "Cargo.toml").write_text('[package]\nname = "beta"\n')
    (root / "beta" / "src" / "bin" / "beta-cli.rs").write_text("fn main() {}\n")
    (root / "target" / "release").mkdir(parents=True)
    return root


@pytest.fixture
def settings(tmp_path: Path, workspace: Path) -> Settings:
    """Settings rooted entirely under tmp_path."""
    return Settings(
        workspace_dir=workspace,
        cache_dir=tmp_path / "cache",
        artifacts_dir=tmp_path / "artifacts",
        db_url=f"sqlite:///{tmp_path / 'state' / 'db.sqlite'}",
        signing_cert=tmp_path / "certs" / "cert.pem",
        signing_key=tmp_path / "certs" / "key.pem",
        max_concurrent_builds=4,
    )


@pytest.fixture
def session_factory(settings: Settings):
    """File-backed SQLite session factory (shared across threads)."""
    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@pytest.fixture
def toolchain(tmp_path: Path) -> Toolchain:
    """A resolved toolchain that needs no installation."""
    root = tmp_path / "toolchains" / "stable-0123456789abcdef"
    (root / "bin").mkdir(parents=True)
    return Toolchain(
        name="stable",
        channel="stable",
        root_dir=root,
        components=("rustc@x86_64-unknown-linux-gnu",),
        targets=("x86_64-unknown-linux-gnu", "x86_64-unknown-freebsd"),
        manifest_sha256="ab" * 32,
    )


@pytest.fixture
def alpha() -> BuildUnit:
    return BuildUnit(
        name="alpha",
        description="Alpha service",
        version="1.2.3",
        features=["x", "y"],
    )


class FakeCargo:
    """Stand-in for ``run_logged`` that records every command.

    ``cargo build`` invocations write a binary into ``CARGO_TARGET_DIR``
    (nested under ``CARGO_BUILD_TARGET`` when set). A command fails when
    any of its arguments appears in ``fail``, or when ``fail`` is a
    predicate that returns True for it.
    """

    def __init__(self, fail=()) -> None:
        self.calls: list[dict] = []
        self.fail = fail

    def __call__(
        self, cmd, cwd, log_path, env_override=None, timeout=None, append=False
    ) -> CommandResult:
        env = dict(env_override or {})
        cmd = list(cmd)
        self.calls.append({"cmd": cmd, "cwd": Path(cwd), "env": env})
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("# Command: " + " ".join(cmd) + "\nwarning: fake\n")

        if callable(self.fail):
            failed = self.fail(cmd)
        else:
            failed = any(token in cmd for token in self.fail)
        if not failed and len(cmd) > 1 and cmd[1] == "build":
            target_dir = Path(env["CARGO_TARGET_DIR"])
            triple = env.get("CARGO_BUILD_TARGET")
            release = (target_dir / triple if triple else target_dir) / "release"
            release.mkdir(parents=True, exist_ok=True)
            (release / "deps").mkdir(exist_ok=True)
            (release / "deps" / "libserde.rlib").write_bytes(b"rlib")
            if "--bin" in cmd:
                name = cmd[cmd.index("--bin") + 1]
                binary = release / name
                binary.write_bytes(b"\x7fELF fake binary " + name.encode())
                os.chmod(binary, 0o755)

        now = datetime.now(timezone.utc)
        return CommandResult(
            success=not failed,
            exit_code=101 if failed else 0,
            log_path=log_path,
            started_at=now,
            finished_at=now,
            command=" ".join(cmd),
            error_message="Command failed with exit code 101" if failed else None,
        )

    def commands(self, subcommand: str) -> list[list[str]]:
        return [c["cmd"] for c in self.calls if c["cmd"][1:2] == [subcommand]]


@pytest.fixture
def fake_cargo() -> FakeCargo:
    return FakeCargo()
