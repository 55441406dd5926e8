"""Error taxonomy for buildmatrix.

Every error carries a stable ``code`` for structured handling, and an
optional ``context`` mapping naming the matrix cell (toolchain, unit,
feature set, platform) that produced it. Lower layers raise the specific
error; callers that add context re-raise with ``from`` so the original
cause stays attached.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class BuildMatrixError(Exception):
    """Base class for all buildmatrix errors."""

    default_code = "buildmatrix_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context: dict[str, Any] = dict(context or {})

    def with_context(self, **context: Any) -> BuildMatrixError:
        """Return this error with additional context merged in."""
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    def __str__(self) -> str:
        if not self.context:
            return self.message
        where = ", ".join(f"{k}={v}" for k, v in sorted(self.context.items()))
        return f"{self.message} [{where}]"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            result["context"] = {k: str(v) for k, v in self.context.items()}
        return result


# Configuration errors: fatal, reported immediately, never retried.


class ConfigurationError(BuildMatrixError):
    """Raised for invalid or incomplete configuration."""

    default_code = "configuration_error"


class UnknownToolchainError(ConfigurationError):
    """Raised when a toolchain name is not in the registered enumeration."""

    default_code = "unknown_toolchain"

    def __init__(self, name: str, known: list[str] | None = None) -> None:
        message = f"Unknown toolchain: {name}"
        if known:
            message += f" (expected one of: {', '.join(known)})"
        super().__init__(message, context={"toolchain": name})
        self.name = name


class UnknownPlatformError(ConfigurationError):
    """Raised when a platform name is not registered."""

    default_code = "unknown_platform"

    def __init__(self, name: str, known: list[str] | None = None) -> None:
        message = f"Unknown platform: {name}"
        if known:
            message += f" (expected one of: {', '.join(known)})"
        super().__init__(message, context={"platform": name})
        self.name = name


class OfflineModeError(ConfigurationError):
    """Raised when a fetch is required but offline mode is enabled."""

    default_code = "offline_mode"


class SigningMaterialMissingError(ConfigurationError):
    """Raised when signing certificate or key material is absent or unreadable."""

    default_code = "signing_material_missing"

    def __init__(self, path: Path, role: str) -> None:
        super().__init__(
            f"Signing {role} is missing or unreadable: {path}",
            context={"path": str(path), "role": role},
        )
        self.path = path
        self.role = role


# Metadata errors: the source tree is misconfigured.


class MetadataError(BuildMatrixError):
    """Raised when build-unit metadata is invalid."""

    default_code = "metadata_error"


class MetadataNotFoundError(MetadataError):
    """Raised when a requested unit is absent from the declared unit list."""

    default_code = "unit_not_found"

    def __init__(self, unit: str) -> None:
        super().__init__(f"Build unit not found: {unit}", context={"unit": unit})
        self.unit = unit


class DuplicateMetadataError(MetadataError):
    """Raised when more than one declared unit shares a name."""

    default_code = "duplicate_unit"

    def __init__(self, unit: str, count: int) -> None:
        super().__init__(
            f"Duplicate metadata for build unit {unit} ({count} entries)",
            context={"unit": unit},
        )
        self.unit = unit
        self.count = count


class ReservedFeatureNameError(MetadataError):
    """Raised when a declared feature flag collides with a reserved token."""

    default_code = "reserved_feature_name"

    def __init__(self, unit: str, flag: str, reason: str) -> None:
        super().__init__(
            f"Feature flag {flag!r} of unit {unit} is not allowed: {reason}",
            context={"unit": unit},
        )
        self.unit = unit
        self.flag = flag


# Execution errors.


class BuildFailureError(BuildMatrixError):
    """Raised when the compiler or linter reports failure.

    Build failures are deterministic given the same inputs and are never
    retried automatically.
    """

    default_code = "build_failed"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: Path | None = None,
        diagnostics: str | None = None,
        code: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code=code, context=context)
        self.exit_code = exit_code
        self.log_path = log_path
        self.diagnostics = diagnostics

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.exit_code is not None:
            result["exit_code"] = self.exit_code
        if self.log_path is not None:
            result["log_path"] = str(self.log_path)
        return result


class CrossToolchainBuildError(BuildMatrixError):
    """Raised when bootstrapping a foreign platform's cross toolchain fails.

    The failure is isolated to that platform.
    """

    default_code = "cross_toolchain_failed"

    def __init__(
        self,
        platform: str,
        stage: str,
        message: str,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(
            f"Cross toolchain stage {stage!r} failed for {platform}: {message}",
            context={"platform": platform, "stage": stage},
        )
        self.platform = platform
        self.stage = stage
        self.log_path = log_path


class FetchError(BuildMatrixError):
    """Raised when retrieving a pinned external component fails.

    Fetch errors are plausibly transient and may be retried a bounded
    number of times.
    """

    default_code = "fetch_error"

    def __init__(
        self,
        message: str,
        url: str | None = None,
        code: str | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message, code=code, context={"url": url} if url else None)
        self.url = url
        self.retryable = retryable


class SigningError(BuildMatrixError):
    """Raised when the external signing/packaging tool fails."""

    default_code = "signing_failed"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: Path | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context=context)
        self.exit_code = exit_code
        self.log_path = log_path


__all__ = [
    "BuildFailureError",
    "BuildMatrixError",
    "ConfigurationError",
    "CrossToolchainBuildError",
    "DuplicateMetadataError",
    "FetchError",
    "MetadataError",
    "MetadataNotFoundError",
    "OfflineModeError",
    "ReservedFeatureNameError",
    "SigningError",
    "SigningMaterialMissingError",
    "UnknownPlatformError",
    "UnknownToolchainError",
]
