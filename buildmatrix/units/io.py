"""Build-unit metadata loading.

Units are read from ``cargo metadata`` output or from a YAML/JSON
workspace description file. Every loaded unit is checked against the
reserved feature-set tokens before it is handed to the build graph.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml

from buildmatrix.builds.features import reserved_flag_problem
from buildmatrix.errors import MetadataError, ReservedFeatureNameError
from buildmatrix.units.schema import BuildUnit, WorkspaceSchema

logger = logging.getLogger(__name__)


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def check_reserved_features(unit: BuildUnit) -> BuildUnit:
    """Reject units whose flags collide with reserved feature-set tokens.

    Args:
        unit: Unit to check.

    Returns:
        The unit unchanged.

    Raises:
        ReservedFeatureNameError: If a flag is reserved or malformed.
    """
    for flag in unit.features:
        problem = reserved_flag_problem(flag)
        if problem is not None:
            raise ReservedFeatureNameError(unit.name, flag, problem)
    return unit


def _bin_target_name(package: dict[str, Any]) -> str | None:
    """Return the first binary target of a cargo metadata package."""
    for target in package.get("targets") or []:
        if "bin" in (target.get("kind") or []):
            return target.get("name")
    return None


def parse_cargo_metadata(
    data: dict[str, Any],
    overrides: dict[str, BuildUnit] | None = None,
) -> list[BuildUnit]:
    """Convert ``cargo metadata`` JSON into build units.

    Args:
        data: Parsed ``cargo metadata --format-version 1`` output.
        overrides: Per-unit settings (bin, platforms) from a description
            file, keyed by unit name.

    Returns:
        Units in metadata order. Duplicates are kept so lookups can
        detect them.

    Raises:
        MetadataError: If the document has no package list.
        ReservedFeatureNameError: If a flag uses a reserved name.
    """
    packages = data.get("packages")
    if not isinstance(packages, list):
        raise MetadataError("cargo metadata output has no 'packages' list")

    overrides = overrides or {}
    units: list[BuildUnit] = []
    for package in packages:
        name = package["name"]
        override = overrides.get(name)
        unit = BuildUnit(
            name=name,
            bin=(override.bin if override and override.bin else None)
            or _bin_target_name(package),
            description=package.get("description") or "",
            version=package.get("version") or "0.0.0",
            features=sorted((package.get("features") or {}).keys()),
            default_platform=override.default_platform if override else None,
            extra_platforms=override.extra_platforms if override else [],
        )
        units.append(check_reserved_features(unit))

    logger.debug("Parsed %d unit(s) from cargo metadata", len(units))
    return units


def parse_workspace_data(data: dict[str, Any]) -> WorkspaceSchema:
    """Parse and validate a workspace description.

    Args:
        data: Dictionary containing workspace data.

    Returns:
        Validated WorkspaceSchema.

    Raises:
        pydantic.ValidationError: If data does not match schema.
        ReservedFeatureNameError: If a flag uses a reserved name.
    """
    workspace = WorkspaceSchema.model_validate(data)
    for unit in workspace.units:
        check_reserved_features(unit)
    return workspace


def load_workspace(path: Path) -> WorkspaceSchema:
    """Load and validate a workspace description file (YAML or JSON).

    Args:
        path: Path to the description file.

    Returns:
        Validated WorkspaceSchema.

    Raises:
        ValueError: If the file extension is not supported.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        data = load_yaml(path)
    elif suffix == ".json":
        data = load_json(path)
    else:
        raise ValueError(
            f"Unsupported file extension '{suffix}'. Use .yaml, .yml, or .json"
        )
    return parse_workspace_data(data)


__all__ = [
    "check_reserved_features",
    "load_json",
    "load_workspace",
    "load_yaml",
    "parse_cargo_metadata",
    "parse_workspace_data",
]
