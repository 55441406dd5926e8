"""Signing material and signer invocation.

Certificate and key files are supplied by the caller's environment,
typically from a restricted location outside normal build inputs. Their
absence is a hard configuration error: nothing is ever emitted unsigned.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from buildmatrix.errors import SigningMaterialMissingError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningMaterial:
    """Paths to the signing certificate and private key.

    Attributes:
        cert: Certificate file.
        key: Private key file.
    """

    cert: Path
    key: Path

    def validate(self) -> SigningMaterial:
        """Check that both files exist and are readable.

        Returns:
            self, for chaining.

        Raises:
            SigningMaterialMissingError: If either file is absent or unreadable.
        """
        for path, role in ((self.cert, "certificate"), (self.key, "key")):
            if not path.is_file() or not os.access(path, os.R_OK):
                logger.error("Signing %s unavailable at %s", role, path)
                raise SigningMaterialMissingError(path, role)
        return self


def compose_signer_command(
    signer: str,
    version: str,
    manifest_path: Path,
    material: SigningMaterial,
    build_dir: Path,
) -> list[str]:
    """Compose the signing/packaging tool invocation.

    The tool runs with the output directory as its working directory and
    packages its contents.

    Args:
        signer: Signer executable.
        version: Package version.
        manifest_path: Package manifest file.
        material: Certificate and key.
        build_dir: Scratch directory for the tool.

    Returns:
        Command as list of strings.
    """
    return [
        signer,
        "--source",
        ".",
        "--version",
        version,
        "--jet",
        str(manifest_path),
        "--cert",
        str(material.cert),
        "--key",
        str(material.key),
        "--build",
        str(build_dir),
        "--debug",
    ]


__all__ = ["SigningMaterial", "compose_signer_command"]
