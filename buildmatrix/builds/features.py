"""Feature matrix expansion.

Given the optional capability flags a build unit declares, produce the
exhaustive verification matrix: the unit's built-in defaults plus every
explicit subset of its non-default flags, the empty subset included.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

# Reserved names
DEFAULT_FEATURE_SET = "default"
EMPTY_FEATURE_SET = "__empty"
FEATURE_SEPARATOR = "+"


@dataclass(frozen=True)
class FeatureSet:
    """A named selection of feature flags.

    ``flags is None`` means "use the unit's built-in defaults". Two feature
    sets are equal iff their names are equal.

    Attributes:
        name: Deterministic name derived from the flags.
        flags: Explicit flags to enable, or None for the default set.
    """

    name: str
    flags: tuple[str, ...] | None = field(default=None, compare=False)

    @property
    def is_default(self) -> bool:
        """Whether this is the reserved default configuration."""
        return self.flags is None

    @classmethod
    def default(cls) -> FeatureSet:
        """Return the reserved default feature set."""
        return cls(name=DEFAULT_FEATURE_SET, flags=None)

    @classmethod
    def from_flags(cls, flags: Iterable[str]) -> FeatureSet:
        """Build an explicit feature set from flag names.

        Args:
            flags: Flag names in any order; duplicates are ignored.

        Returns:
            FeatureSet with canonically ordered flags.
        """
        canonical = tuple(sorted(set(flags)))
        return cls(name=feature_set_name(canonical), flags=canonical)

    @classmethod
    def parse(cls, name: str) -> FeatureSet:
        """Parse a feature-set name back into a FeatureSet.

        Args:
            name: ``default``, ``__empty`` or ``a+b+...``.

        Returns:
            Matching FeatureSet.
        """
        if name == DEFAULT_FEATURE_SET:
            return cls.default()
        if name == EMPTY_FEATURE_SET:
            return cls.from_flags(())
        return cls.from_flags(f for f in name.split(FEATURE_SEPARATOR) if f)

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "flags": list(self.flags) if self.flags is not None else None,
        }


def feature_set_name(flags: tuple[str, ...] | list[str]) -> str:
    """Derive the name of an explicit feature set.

    Args:
        flags: Flags in canonical order.

    Returns:
        ``__empty`` for no flags, otherwise flags joined with ``+``.
    """
    if not flags:
        return EMPTY_FEATURE_SET
    return FEATURE_SEPARATOR.join(flags)


def reserved_flag_problem(flag: str) -> str | None:
    """Return why a declared flag name is unusable, or None if it is fine.

    ``default`` is allowed: cargo uses it for the default feature list and
    it is excluded from the matrix.
    """
    if not flag:
        return "flag names must be non-empty"
    if flag == EMPTY_FEATURE_SET:
        return f"{EMPTY_FEATURE_SET!r} is reserved for the empty feature set"
    if FEATURE_SEPARATOR in flag:
        return f"flag names must not contain {FEATURE_SEPARATOR!r}"
    return None


def power_set(items: list[str]) -> list[list[str]]:
    """Compute the power set of an ordered list.

    Subsets are produced by folding each item into all subsets seen so
    far, so for ``[a, b]`` the order is ``[], [a], [b], [a, b]``.

    Args:
        items: Ordered items.

    Returns:
        List of 2**len(items) subsets, each preserving input order.
    """
    subsets: list[list[str]] = [[]]
    for item in items:
        subsets = subsets + [subset + [item] for subset in subsets]
    return subsets


def expand(declared_flags: Iterable[str]) -> list[FeatureSet]:
    """Expand declared flags into the full verification matrix.

    Args:
        declared_flags: Flags declared by a build unit, in any order.
            ``default`` is dropped if present; duplicates are ignored.

    Returns:
        ``default`` followed by one explicit set per subset of the
        non-default flags: 2**k + 1 entries for k non-default flags.
    """
    non_default = sorted({f for f in declared_flags if f != DEFAULT_FEATURE_SET})
    explicit = [
        FeatureSet(name=feature_set_name(subset), flags=tuple(subset))
        for subset in power_set(non_default)
    ]
    return [FeatureSet.default(), *explicit]


def cargo_feature_args(feature_set: FeatureSet) -> list[str]:
    """Compose cargo feature-selection arguments for a feature set.

    The default set passes nothing so the unit's built-in defaults apply.
    An explicit set disables defaults and enables exactly its flags.

    Args:
        feature_set: Feature set to select.

    Returns:
        Arguments to append to a cargo command.
    """
    if feature_set.is_default:
        return []
    args = ["--no-default-features"]
    if feature_set.flags:
        args.extend(["--features", ",".join(feature_set.flags)])
    return args


__all__ = [
    "DEFAULT_FEATURE_SET",
    "EMPTY_FEATURE_SET",
    "FEATURE_SEPARATOR",
    "FeatureSet",
    "cargo_feature_args",
    "expand",
    "feature_set_name",
    "power_set",
    "reserved_flag_problem",
]
