"""Build-unit lookup and workspace metadata queries.

This module provides:
- load_units(): read the declared unit list for a workspace
- find_unit(): exact, single-match lookup by name
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from buildmatrix.builds.runner import CommandExecutionError, run_cargo_metadata
from buildmatrix.errors import (
    DuplicateMetadataError,
    MetadataError,
    MetadataNotFoundError,
)
from buildmatrix.units.io import load_workspace, parse_cargo_metadata
from buildmatrix.units.schema import BuildUnit, WorkspaceSchema

if TYPE_CHECKING:
    from buildmatrix.config import Settings
    from buildmatrix.toolchains.service import Toolchain

logger = logging.getLogger(__name__)


def find_unit(units: Sequence[BuildUnit], name: str) -> BuildUnit:
    """Find exactly one unit by name.

    Args:
        units: Declared units.
        name: Unit name to look up.

    Returns:
        The single matching unit.

    Raises:
        MetadataNotFoundError: If no unit has this name.
        DuplicateMetadataError: If more than one unit has this name.
    """
    matches = [u for u in units if u.name == name]
    if not matches:
        raise MetadataNotFoundError(name)
    if len(matches) > 1:
        raise DuplicateMetadataError(name, len(matches))
    return matches[0]


def query_cargo_units(
    toolchain: Toolchain,
    workspace_dir: Path,
    overrides: dict[str, BuildUnit] | None = None,
    timeout: int = 300,
) -> list[BuildUnit]:
    """Query units from ``cargo metadata`` using a resolved toolchain.

    Args:
        toolchain: Toolchain providing cargo.
        workspace_dir: Workspace root.
        overrides: Per-unit overrides from a description file.
        timeout: Command timeout in seconds.

    Returns:
        Declared units.

    Raises:
        MetadataError: If the query fails or returns invalid output.
    """
    try:
        output = run_cargo_metadata(
            toolchain.cargo,
            workspace_dir,
            env_override=toolchain.env(),
            timeout=timeout,
        )
    except CommandExecutionError as e:
        raise MetadataError(
            str(e), code=e.code, context={"toolchain": toolchain.name}
        ) from e

    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise MetadataError(
            f"cargo metadata returned invalid JSON: {e}",
            context={"toolchain": toolchain.name},
        ) from e

    return parse_cargo_metadata(data, overrides=overrides)


def read_workspace(settings: Settings) -> WorkspaceSchema | None:
    """Read the configured workspace description file, if any.

    Raises:
        MetadataError: If the file is unreadable or invalid.
    """
    if settings.units_file is None:
        return None
    try:
        return load_workspace(settings.units_file)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise MetadataError(
            f"Invalid workspace description {settings.units_file}: {e}",
            code="invalid_workspace_file",
        ) from e


def load_units(
    settings: Settings,
    toolchain: Toolchain | None = None,
) -> list[BuildUnit]:
    """Load the declared unit list for the configured workspace.

    When a workspace description file is configured and a toolchain is
    given, cargo metadata supplies the units and the file supplies
    per-unit overrides. Without a toolchain the file is authoritative.

    Args:
        settings: Application settings.
        toolchain: Toolchain used for the cargo metadata query.

    Returns:
        Declared units.

    Raises:
        MetadataError: If no source of unit metadata is available.
    """
    overrides: dict[str, BuildUnit] = {}
    workspace = read_workspace(settings)
    if workspace is not None:
        if toolchain is None:
            logger.debug(
                "Loaded %d unit(s) from %s", len(workspace.units), settings.units_file
            )
            return list(workspace.units)
        overrides = {u.name: u for u in workspace.units}

    if toolchain is None:
        raise MetadataError(
            "No workspace description configured and no toolchain "
            "to query cargo metadata"
        )

    return query_cargo_units(
        toolchain,
        settings.workspace_dir,
        overrides=overrides,
    )


__all__ = ["find_unit", "load_units", "query_cargo_units", "read_workspace"]
