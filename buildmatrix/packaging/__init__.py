"""Packaging/signing module.

This module handles:
- Package manifest generation
- Signing material validation
- Invoking the vendor signer and publishing signed packages
"""

from buildmatrix.packaging.manifest import PackageManifest, build_manifest
from buildmatrix.packaging.signing import SigningMaterial

__all__ = ["PackageManifest", "SigningMaterial", "build_manifest"]
