"""Junos (FreeBSD 12 based) foreign platform.

Binaries for Junos devices are cross-compiled for x86_64 FreeBSD with a
self-built binutils/GCC pair against the FreeBSD 12.4 base system, then
wrapped in a signed JET package installed under /var/db/scripts/jet.
"""

from buildmatrix.platforms.base import Platform
from buildmatrix.platforms.cross import CrossToolchainSpec, SourcePin
from buildmatrix.types import PackagerKind

PLATFORM_NAME = "junos-freebsd"

FREEBSD_ARCH = "amd64"
FREEBSD_VERSION = "12.4"

RUST_TARGET = "x86_64-unknown-freebsd"
GNU_TARGET = f"{RUST_TARGET}12"

GNU_MIRROR = "https://ftp.gnu.org/gnu"
GCC_INFRASTRUCTURE = "https://gcc.gnu.org/pub/gcc/infrastructure"


def _gcc_prerequisite(name: str, version: str, compression: str = "bz2") -> SourcePin:
    return SourcePin(
        name=name,
        version=version,
        url=f"{GCC_INFRASTRUCTURE}/{name}-{version}.tar.{compression}",
    )


FREEBSD_CROSS = CrossToolchainSpec(
    gnu_target=GNU_TARGET,
    sysroot=SourcePin(
        name="freebsd-base",
        version=FREEBSD_VERSION,
        url=(
            "https://ftp.freebsd.org/pub/FreeBSD/releases/"
            f"{FREEBSD_ARCH}/{FREEBSD_VERSION}-RELEASE/base.txz"
        ),
    ),
    binutils=SourcePin(
        name="binutils",
        version="2.32",
        url=f"{GNU_MIRROR}/binutils/binutils-2.32.tar.gz",
    ),
    gcc=SourcePin(
        name="gcc",
        version="6.4.0",
        url=f"{GNU_MIRROR}/gcc/gcc-6.4.0/gcc-6.4.0.tar.gz",
    ),
    gcc_prerequisites=(
        _gcc_prerequisite("mpfr", "2.4.2"),
        _gcc_prerequisite("gmp", "4.3.2"),
        _gcc_prerequisite("mpc", "0.8.1", compression="gz"),
    ),
)

JUNOS_FREEBSD = Platform(
    name=PLATFORM_NAME,
    rust_target=RUST_TARGET,
    cross_toolchain=FREEBSD_CROSS,
    packager=PackagerKind.JET,
    arch="x86",
    abi="64",
    install_dir="/var/db/scripts/jet",
)

__all__ = [
    "FREEBSD_CROSS",
    "GNU_TARGET",
    "JUNOS_FREEBSD",
    "PLATFORM_NAME",
    "RUST_TARGET",
]
