"""Pydantic models for build-unit metadata.

A build unit is one compilable package of the workspace: a name, the
binary it produces, a human-readable description and the optional
feature flags it declares. Units come either from ``cargo metadata`` or
from a YAML/JSON workspace description file.
"""

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

from buildmatrix.platforms.base import NATIVE_PLATFORM

UNIT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_\-]+$")


class BuildUnit(BaseModel):
    """Schema for a single build unit.

    Attributes:
        name: Package name, unique within the workspace.
        bin: Entry-point binary name (defaults to the package name).
        description: Human-readable description.
        version: Package version, used when packaging.
        features: Declared optional feature flags (may include ``default``).
        default_platform: Platform built when none is requested.
        extra_platforms: Additional platforms the unit is offered for.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: Annotated[
        str, Field(description="Package name", min_length=1, max_length=255)
    ]
    bin: str | None = Field(default=None, description="Entry-point binary name")
    description: str = Field(default="", description="Human-readable description")
    version: str = Field(default="0.0.0", description="Package version")
    features: list[str] = Field(
        default_factory=list, description="Declared optional feature flags"
    )
    default_platform: str | None = Field(
        default=None, description="Platform built when none is requested"
    )
    extra_platforms: list[str] = Field(
        default_factory=list, description="Additional platforms for this unit"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the unit name matches the cargo package name pattern."""
        if not UNIT_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {UNIT_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("features")
    @classmethod
    def dedupe_features(cls, v: list[str]) -> list[str]:
        """Drop duplicate flag names, keeping first occurrence."""
        return list(dict.fromkeys(v))

    @property
    def bin_name(self) -> str:
        """Binary produced by this unit."""
        return self.bin or self.name

    @property
    def platforms(self) -> list[str]:
        """Platforms this unit is offered for, its default platform first."""
        default = self.default_platform or NATIVE_PLATFORM
        return list(dict.fromkeys([default, *self.extra_platforms]))


class WorkspaceSchema(BaseModel):
    """Schema for a workspace description file.

    Attributes:
        units: Declared build units.
        copyright: Optional copyright line for package manifests.
    """

    model_config = ConfigDict(extra="forbid")

    units: list[BuildUnit] = Field(default_factory=list)
    copyright: str | None = Field(default=None)


__all__ = ["UNIT_NAME_PATTERN", "BuildUnit", "WorkspaceSchema"]
