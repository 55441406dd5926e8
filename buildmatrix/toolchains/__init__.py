"""Toolchain management module.

This module handles:
- Resolving the fixed set of named toolchains (stable, nightly, msrv)
- Fetching and verifying channel manifests and components
- Installing toolchains into a content-addressed cache
- Tracking resolved toolchains in the database
"""

from buildmatrix.toolchains.models import ToolchainRecord

__all__ = ["ToolchainRecord"]

# Access the manager via buildmatrix.toolchains.service
