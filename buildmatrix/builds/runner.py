"""Command runner for cargo and other external tools.

This module handles:
- Composing cargo build/clippy/metadata commands for a build unit
- Executing commands with subprocess
- Capturing stdout/stderr to log files
- Enforcing timeouts
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from buildmatrix.builds.features import FeatureSet, cargo_feature_args

logger = logging.getLogger(__name__)

# Number of trailing log lines kept as diagnostics on failure
DIAGNOSTIC_TAIL_LINES = 40

CLIPPY_LINT_ARGS = ["--all-targets", "--", "--deny", "warnings"]


class CommandExecutionError(Exception):
    """Raised when a command cannot be started or times out."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "execution_error",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        success: Whether the command exited with status 0.
        exit_code: Process exit code.
        log_path: Path to the log file.
        started_at: Start time.
        finished_at: Finish time.
        command: The command that was executed.
        error_message: Error message if the command failed.
    """

    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None

    def diagnostics(self, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
        """Return the tail of the captured log."""
        return read_log_tail(self.log_path, lines)


def read_log_tail(log_path: Path, lines: int = DIAGNOSTIC_TAIL_LINES) -> str:
    """Read the last lines of a log file.

    Args:
        log_path: Log file path.
        lines: Number of lines to keep.

    Returns:
        Tail of the log, or an empty string if unreadable.
    """
    try:
        content = log_path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.splitlines()[-lines:])


def merge_env(env_override: dict[str, str] | None) -> dict[str, str] | None:
    """Overlay overrides onto the current environment.

    ``PATH`` entries in the override are prepended rather than replacing.
    """
    if not env_override:
        return None
    env = dict(os.environ)
    for key, value in env_override.items():
        if key == "PATH" and env.get("PATH"):
            env[key] = f"{value}{os.pathsep}{env['PATH']}"
        else:
            env[key] = value
    return env


def run_logged(
    cmd: Sequence[str],
    cwd: Path,
    log_path: Path,
    env_override: dict[str, str] | None = None,
    timeout: int | None = None,
    append: bool = False,
) -> CommandResult:
    """Execute a command with output captured to a log file.

    Args:
        cmd: Command as list of strings.
        cwd: Working directory.
        log_path: Log file to write.
        env_override: Environment overrides (PATH is prepended).
        timeout: Timeout in seconds (None = no timeout).
        append: Append to an existing log instead of truncating it.

    Returns:
        CommandResult with execution details.

    Raises:
        CommandExecutionError: If the command cannot start or times out.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("a" if append else "w") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            result = subprocess.run(
                list(cmd),
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=merge_env(env_override),
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"Command failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"Command timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise CommandExecutionError(
            error_message,
            exit_code=-1,
            code="timeout",
            log_path=log_path,
        ) from e

    except OSError as e:
        error_message = f"Failed to execute {cmd[0]}: {e}"
        logger.error(error_message)
        raise CommandExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
            log_path=log_path,
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return CommandResult(
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def compose_cargo_command(
    cargo: str,
    subcommand: str,
    package: str,
    feature_set: FeatureSet,
    bin_name: str | None = None,
    release: bool = True,
    extra_args: Sequence[str] = (),
) -> list[str]:
    """Compose a cargo command for one matrix cell.

    Args:
        cargo: Path to the cargo executable.
        subcommand: ``build``, ``check`` or ``clippy``.
        package: Package to select with ``-p``.
        feature_set: Feature set to apply.
        bin_name: Restrict to a single binary.
        release: Build with the release profile.
        extra_args: Trailing arguments (e.g. clippy lint flags).

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [cargo, subcommand, "--locked"]
    if release:
        cmd.append("--release")
    cmd.extend(["-p", package])
    cmd.extend(cargo_feature_args(feature_set))
    if bin_name:
        cmd.extend(["--bin", bin_name])
    cmd.extend(extra_args)
    return cmd


def compose_deps_commands(
    cargo: str, package: str, feature_set: FeatureSet
) -> list[list[str]]:
    """Compose the commands that warm a dependency-only target directory.

    The release build covers final binaries; the all-targets check covers
    clippy, which compiles dependencies in check mode and includes
    dev-dependencies.
    """
    return [
        compose_cargo_command(cargo, "build", package, feature_set),
        compose_cargo_command(
            cargo, "check", package, feature_set, extra_args=["--all-targets"]
        ),
    ]


def compose_metadata_command(cargo: str) -> list[str]:
    """Compose the one-shot workspace metadata query."""
    return [cargo, "metadata", "--no-deps", "--format-version", "1"]


def run_cargo_metadata(
    cargo: str,
    workspace_dir: Path,
    env_override: dict[str, str] | None = None,
    timeout: int = 300,
) -> str:
    """Run ``cargo metadata`` and return its JSON output.

    Args:
        cargo: Path to the cargo executable.
        workspace_dir: Workspace root.
        env_override: Environment overrides.
        timeout: Command timeout in seconds.

    Returns:
        Raw JSON output.

    Raises:
        CommandExecutionError: If the command fails.
    """
    cmd = compose_metadata_command(cargo)
    try:
        result = subprocess.run(
            cmd,
            cwd=workspace_dir,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=merge_env(env_override),
            check=True,
        )
        return result.stdout

    except subprocess.TimeoutExpired as e:
        raise CommandExecutionError(
            f"cargo metadata timed out after {timeout}s",
            exit_code=-1,
            code="timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise CommandExecutionError(
            f"cargo metadata failed: {e.stderr}",
            exit_code=e.returncode,
            code="metadata_error",
        ) from e
    except OSError as e:
        raise CommandExecutionError(
            f"Failed to run cargo metadata: {e}",
            code="execution_error",
        ) from e


__all__ = [
    "CLIPPY_LINT_ARGS",
    "CommandExecutionError",
    "CommandResult",
    "compose_cargo_command",
    "compose_deps_commands",
    "compose_metadata_command",
    "merge_env",
    "read_log_tail",
    "run_cargo_metadata",
    "run_logged",
]
