"""buildmatrix - feature-matrix build and packaging orchestration for a Cargo workspace.

This package resolves Rust toolchains, expands each build unit's feature
matrix, caches dependency-only artifacts, cross-compiles for foreign
platforms and produces signed vendor packages.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
