"""Platform abstraction module.

This module handles:
- The native platform and registered foreign platforms
- Environment injection for cross builds
- Self-built cross toolchains for foreign platforms
"""

from buildmatrix.platforms.base import NATIVE_PLATFORM, BuildRequest, Platform
from buildmatrix.platforms.cross import CrossToolchainBuilder, CrossToolchainSpec
from buildmatrix.platforms.junos import JUNOS_FREEBSD
from buildmatrix.platforms.registry import PlatformRegistry

__all__ = [
    "JUNOS_FREEBSD",
    "NATIVE_PLATFORM",
    "BuildRequest",
    "CrossToolchainBuilder",
    "CrossToolchainSpec",
    "Platform",
    "PlatformRegistry",
]
