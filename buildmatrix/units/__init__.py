"""Build-unit metadata module.

This module handles:
- Schema for build units and workspace description files
- Loading units from cargo metadata or YAML/JSON
- Reserved feature-name validation
- Single-match lookup by unit name
"""

from buildmatrix.units.io import (
    check_reserved_features,
    load_workspace,
    parse_cargo_metadata,
    parse_workspace_data,
)
from buildmatrix.units.schema import BuildUnit, WorkspaceSchema
from buildmatrix.units.service import find_unit, load_units, query_cargo_units

__all__ = [
    "BuildUnit",
    "WorkspaceSchema",
    "check_reserved_features",
    "find_unit",
    "load_units",
    "load_workspace",
    "parse_cargo_metadata",
    "parse_workspace_data",
    "query_cargo_units",
]
