"""Pinned component fetch module.

This module handles:
- Rust channel manifest discovery, download and checksum verification
- Component selection (host tools plus cross-target standard libraries)
- Content-addressed download store shared by toolchains and cross sources
- Safe archive extraction
- Bounded retries for transient network failures
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
import tempfile
import time
import tomllib
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeVar

import httpx

from buildmatrix.errors import FetchError

logger = logging.getLogger(__name__)

# Timeout for small metadata requests (seconds)
METADATA_TIMEOUT = 30

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# First delay between retries (seconds), doubled on each attempt
RETRY_BACKOFF = 1.0

# Host tool components every toolchain carries
HOST_COMPONENTS = ("rustc", "cargo", "clippy", "rustfmt", "llvm-tools")
STD_COMPONENT = "rust-std"

T = TypeVar("T")


@dataclass(frozen=True)
class ComponentSpec:
    """A single downloadable toolchain component.

    Attributes:
        name: Logical component name (e.g. ``clippy``).
        package: Package name in the manifest (e.g. ``clippy-preview``).
        target: Target triple the component is built for.
        url: Archive URL.
        sha256: Expected archive checksum.
    """

    name: str
    package: str
    target: str
    url: str
    sha256: str

    @property
    def label(self) -> str:
        """Return a short ``name@target`` label."""
        return f"{self.name}@{self.target}"


@dataclass
class DownloadResult:
    """Result of a download."""

    path: Path
    checksum: str
    size_bytes: int


def with_retries(
    operation: Callable[[], T],
    attempts: int,
    description: str,
    backoff: float = RETRY_BACKOFF,
) -> T:
    """Run an operation, retrying retryable FetchErrors a bounded number of times.

    Args:
        operation: Zero-argument callable to run.
        attempts: Maximum number of attempts (>= 1).
        description: What is being fetched, for logging.
        backoff: Initial delay between attempts, doubled each time.

    Returns:
        The operation's result.

    Raises:
        FetchError: The last error once attempts are exhausted, or
            immediately if the error is not retryable.
    """
    delay = backoff
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except FetchError as e:
            if not e.retryable or attempt == attempts:
                raise
            logger.warning(
                "Fetching %s failed (attempt %d/%d): %s; retrying in %.1fs",
                description,
                attempt,
                attempts,
                e,
                delay,
            )
            time.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def _raise_for_http(e: Exception, url: str) -> None:
    """Translate an httpx exception into a FetchError."""
    if isinstance(e, httpx.HTTPStatusError):
        status = e.response.status_code
        raise FetchError(
            f"HTTP error fetching {url}: {status} {e.response.reason_phrase}",
            url=url,
            code="http_error",
            # Client errors will not fix themselves
            retryable=status >= 500 or status == 429,
        ) from e
    if isinstance(e, httpx.TimeoutException):
        raise FetchError(f"Timeout fetching {url}", url=url, code="timeout") from e
    if isinstance(e, httpx.RequestError):
        raise FetchError(
            f"Network error fetching {url}: {e}", url=url, code="network_error"
        ) from e
    raise e


def fetch_text(
    client: httpx.Client,
    url: str,
    timeout: float = METADATA_TIMEOUT,
) -> str:
    """Fetch a small text document.

    Args:
        client: HTTPX client instance.
        url: URL to fetch.
        timeout: Request timeout in seconds.

    Returns:
        Response body as text.

    Raises:
        FetchError: If the fetch fails.
    """
    logger.debug("Fetching %s", url)
    try:
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
        return response.text
    except httpx.HTTPError as e:
        _raise_for_http(e, url)
        raise


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> DownloadResult:
    """Download a file with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        FetchError: If the download fails or the checksum does not match.
    """
    logger.info("Downloading %s", url)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            with dest_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)
    except httpx.HTTPError as e:
        dest_path.unlink(missing_ok=True)
        _raise_for_http(e, url)
        raise

    computed_checksum = sha256.hexdigest()
    if expected_checksum and computed_checksum != expected_checksum.lower():
        dest_path.unlink(missing_ok=True)
        raise FetchError(
            f"Checksum mismatch for {url}: "
            f"expected {expected_checksum}, got {computed_checksum}",
            url=url,
            code="verification_error",
            retryable=False,
        )

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s...)",
        dest_path.name,
        total_bytes,
        computed_checksum[:16],
    )
    return DownloadResult(
        path=dest_path, checksum=computed_checksum, size_bytes=total_bytes
    )


def store_path_for(store_dir: Path, url: str, sha256: str | None) -> Path:
    """Return the content-addressed store path for an archive.

    Archives with a known checksum are stored under that checksum;
    unpinned ones under a digest of their URL.
    """
    filename = url.rsplit("/", 1)[-1]
    if sha256:
        return store_dir / f"{sha256.lower()}-{filename}"
    url_digest = hashlib.sha256(url.encode("utf-8")).hexdigest()[:16]
    return store_dir / f"url-{url_digest}-{filename}"


def fetch_to_store(
    client: httpx.Client,
    url: str,
    store_dir: Path,
    sha256: str | None = None,
    attempts: int = 1,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> Path:
    """Fetch an archive into the content-addressed download store.

    An archive already present in the store is reused without network
    access (after re-verifying a pinned checksum).

    Args:
        client: HTTPX client instance.
        url: Archive URL.
        store_dir: Download store directory.
        sha256: Expected checksum, if pinned.
        attempts: Retry budget for transient failures.
        timeout: Download timeout in seconds.

    Returns:
        Path of the archive in the store.

    Raises:
        FetchError: If the download fails after all attempts.
    """
    dest = store_path_for(store_dir, url, sha256)
    if dest.exists():
        if sha256 is None or compute_file_sha256(dest) == sha256.lower():
            logger.debug("Store hit for %s", url)
            return dest
        logger.warning("Store entry %s is corrupt, re-downloading", dest.name)
        dest.unlink()

    if sha256 is None:
        logger.warning("No pinned checksum for %s", url)

    store_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=store_dir, suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        with_retries(
            lambda: download_file(
                client, url, tmp_path, expected_checksum=sha256, timeout=timeout
            ),
            attempts=attempts,
            description=url,
        )
        tmp_path.replace(dest)
    finally:
        tmp_path.unlink(missing_ok=True)

    return dest


def extract_archive(
    archive_path: Path,
    dest_dir: Path,
    extraction_filter: Literal["data", "tar"] = "data",
) -> Path:
    """Extract a tar archive (optionally compressed) into a directory.

    Args:
        archive_path: Path to the archive.
        dest_dir: Destination directory.
        extraction_filter: tarfile extraction filter; ``tar`` keeps
            absolute symlinks, which system snapshots rely on.

    Returns:
        The single top-level directory of the archive, or ``dest_dir``
        if the archive has several top-level entries.

    Raises:
        FetchError: If the archive is unreadable or unsafe.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            if not members:
                raise FetchError(
                    f"Archive {archive_path} is empty",
                    code="empty_archive",
                    retryable=False,
                )
            for member in members:
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise FetchError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                        retryable=False,
                    )
            tar.extractall(dest_dir, filter=extraction_filter)
    except tarfile.TarError as e:
        raise FetchError(
            f"Failed to extract {archive_path}: {e}",
            code="extraction_error",
            retryable=False,
        ) from e

    top_level = {
        Path(m.name).parts[0]
        for m in members
        if Path(m.name).parts and Path(m.name).parts[0] != "."
    }
    if len(top_level) == 1:
        root = dest_dir / top_level.pop()
        if root.is_dir():
            return root
    return dest_dir


def manifest_url(dist_url: str, channel: str) -> str:
    """Build the channel manifest URL for a release channel."""
    return f"{dist_url.rstrip('/')}/channel-rust-{channel}.toml"


def fetch_manifest(
    client: httpx.Client,
    dist_url: str,
    channel: str,
    attempts: int = 1,
) -> tuple[dict[str, Any], str]:
    """Fetch and verify a Rust channel manifest.

    Args:
        client: HTTPX client instance.
        dist_url: Distribution server base URL.
        channel: Release channel (``stable``, ``nightly``, ``1.75``...).
        attempts: Retry budget for transient failures.

    Returns:
        Tuple of (parsed manifest, manifest sha256).

    Raises:
        FetchError: If the manifest cannot be fetched, verified or parsed.
    """
    url = manifest_url(dist_url, channel)
    text = with_retries(lambda: fetch_text(client, url), attempts, url)
    sums = with_retries(lambda: fetch_text(client, f"{url}.sha256"), attempts, url)

    digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
    expected = sums.split()[0].lower() if sums.strip() else ""
    if expected and digest != expected:
        raise FetchError(
            f"Checksum mismatch for {url}: expected {expected}, got {digest}",
            url=url,
            code="verification_error",
            retryable=False,
        )

    try:
        manifest = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise FetchError(
            f"Invalid channel manifest at {url}: {e}",
            url=url,
            code="invalid_manifest",
            retryable=False,
        ) from e

    return manifest, digest


def _package_name(manifest: dict[str, Any], component: str) -> str:
    """Resolve a component through the manifest's renames table."""
    rename = (manifest.get("renames") or {}).get(component) or {}
    return rename.get("to", component)


def _component_spec(
    manifest: dict[str, Any], component: str, target: str
) -> ComponentSpec:
    """Look up a single component for a target in a manifest."""
    package = _package_name(manifest, component)
    entry = (
        ((manifest.get("pkg") or {}).get(package) or {}).get("target") or {}
    ).get(target)
    if not entry or not entry.get("available", False):
        raise FetchError(
            f"Component {component} ({package}) is not available for {target}",
            code="component_unavailable",
            retryable=False,
        )
    url = entry.get("xz_url") or entry.get("url")
    sha256 = entry.get("xz_hash") or entry.get("hash")
    return ComponentSpec(
        name=component, package=package, target=target, url=url, sha256=sha256
    )


def select_components(
    manifest: dict[str, Any],
    host_triple: str,
    cross_targets: Iterable[str] = (),
) -> list[ComponentSpec]:
    """Select the components a toolchain needs from a channel manifest.

    Host tools and the host standard library are always selected, plus
    one standard library per cross target.

    Args:
        manifest: Parsed channel manifest.
        host_triple: Triple of the build host.
        cross_targets: Target triples of every registered foreign platform.

    Returns:
        Component specs in a stable order.

    Raises:
        FetchError: If a required component is unavailable.
    """
    specs = [_component_spec(manifest, c, host_triple) for c in HOST_COMPONENTS]
    targets = [host_triple] + sorted(set(cross_targets) - {host_triple})
    specs.extend(_component_spec(manifest, STD_COMPONENT, t) for t in targets)
    return specs


def remove_tree(path: Path) -> bool:
    """Remove a cached directory tree.

    Args:
        path: Directory to remove.

    Returns:
        True if removed, False if it didn't exist.
    """
    if not path.exists():
        return False
    logger.info("Removing %s", path)
    shutil.rmtree(path)
    return True


def get_cache_size(cache_dir: Path) -> int:
    """Calculate total size of a cache directory.

    Args:
        cache_dir: Root cache directory.

    Returns:
        Total size in bytes.
    """
    total = 0
    if cache_dir.exists():
        for path in cache_dir.rglob("*"):
            if path.is_file() and not path.is_symlink():
                total += path.stat().st_size
    return total


__all__ = [
    "HOST_COMPONENTS",
    "STD_COMPONENT",
    "ComponentSpec",
    "DownloadResult",
    "compute_file_sha256",
    "download_file",
    "extract_archive",
    "fetch_manifest",
    "fetch_text",
    "fetch_to_store",
    "get_cache_size",
    "manifest_url",
    "remove_tree",
    "select_components",
    "store_path_for",
    "with_retries",
]
