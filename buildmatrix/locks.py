"""Cross-process file locks.

Used to serialize work on one cache key (toolchain install, dependency
build, cross toolchain bootstrap) across processes sharing a cache
directory. Different keys use different lock files and never contend.
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]+")


def lock_file_name(kind: str, key: str) -> str:
    """Return a filesystem-safe lock file name for a key."""
    safe_key = _UNSAFE_CHARS.sub("_", key)[:96]
    return f"{kind}_{safe_key}.lock"


@contextmanager
def file_lock(
    lock_dir: Path,
    kind: str,
    key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire an exclusive lock for a cache key.

    Args:
        lock_dir: Directory for lock files.
        kind: Lock namespace (``toolchain``, ``deps``, ``cross``).
        key: Key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_path = lock_dir / lock_file_name(kind, key)

    logger.debug("Acquiring %s lock for %s", kind, key[:32])

    fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for {kind} lock on {key[:32]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("%s lock acquired for %s", kind.capitalize(), key[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("%s lock released for %s", kind.capitalize(), key[:32])
        os.close(fd)


__all__ = ["file_lock", "lock_file_name"]
