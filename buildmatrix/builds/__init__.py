"""Build graph module.

This module handles:
- Feature matrix expansion
- Cache key computation
- Dependency-only artifact caching
- Running cargo for builds and lints
- Artifact collection and manifest generation
- Build records
"""

from buildmatrix.builds.models import Artifact, BuildRecord

__all__ = ["Artifact", "BuildRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via buildmatrix.builds.service, etc.
