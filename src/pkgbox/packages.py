from __future__ import annotations

from dataclasses import dataclass, field
from functools import cmp_to_key

LATEST = "latest"
RUNX_PREFIX = "runx:"


@dataclass
class PackageRef:
    """
    A declared package reference (`name` or `name@version`) plus its per-package options.

    Options are only changed through the manifest setters before resolution.
    """

    raw: str
    platforms: list[str] = field(default_factory=list)
    excluded_platforms: list[str] = field(default_factory=list)
    disable_plugin: bool = False
    patch_glibc: bool = False
    allow_insecure: bool = False

    def __post_init__(self) -> None:
        self.raw = self.raw.strip()
        if not self.raw:
            raise ValueError("empty package reference")

    def __str__(self) -> str:
        return self.raw

    @property
    def is_runx(self) -> bool:
        return self.raw.startswith(RUNX_PREFIX)

    @property
    def is_flake_ref(self) -> bool:
        if self.is_runx:
            return False
        return ":" in self.raw or "#" in self.raw or self.raw.startswith((".", "/", "~"))

    @property
    def is_resolver_managed(self) -> bool:
        """True for plain names that the search service resolves."""
        return not self.is_runx and not self.is_flake_ref

    @property
    def is_nix(self) -> bool:
        return not self.is_runx

    @property
    def name(self) -> str:
        return split_name_version(self.raw)[0]

    @property
    def version(self) -> str | None:
        return split_name_version(self.raw)[1]

    @property
    def canonical_name(self) -> str:
        if self.is_flake_ref:
            return self.raw
        return self.name

    def versioned(self) -> str:
        if not self.is_resolver_managed:
            return self.raw
        return f"{self.name}@{self.version or LATEST}"

    def is_installable_on(self, system: str) -> bool:
        if self.platforms and system not in self.platforms:
            return False
        return system not in self.excluded_platforms


def split_name_version(raw: str) -> tuple[str, str | None]:
    value = raw.strip()
    if ":" in value or "#" in value:
        if not value.startswith(RUNX_PREFIX):
            return value, None
    at_idx = value.rfind("@")
    if at_idx <= 0:
        return value, None
    name = value[:at_idx].strip()
    version = value[at_idx + 1 :].strip()
    if not version:
        return name, None
    return name, version


def _split_version(version: str) -> tuple[tuple[int, ...], tuple[str, ...] | None]:
    raw = version.strip()
    if not raw:
        raise ValueError("empty version")
    raw = raw.split("+", 1)[0]  # ignore build metadata
    if "-" in raw:
        main_s, pre_s = raw.split("-", 1)
        pre_parts = tuple(p for p in pre_s.split(".") if p != "")
    else:
        main_s = raw
        pre_parts = None
    main_parts = main_s.split(".")
    if any(not p.isdigit() for p in main_parts):
        raise ValueError(f"Unsupported version format: {version!r}")
    nums = [int(p) for p in main_parts]
    while len(nums) < 3:
        nums.append(0)
    return tuple(nums), pre_parts


def compare_versions(a: str, b: str) -> int:
    try:
        ma, pa = _split_version(a)
        mb, pb = _split_version(b)
    except ValueError:
        return (a > b) - (a < b)
    if ma != mb:
        return -1 if ma < mb else 1
    if pa is None and pb is None:
        return 0
    if pa is None:
        return 1
    if pb is None:
        return -1
    for x, y in zip(pa, pb):
        if x == y:
            continue
        if x.isdigit() and y.isdigit():
            return -1 if int(x) < int(y) else 1
        if x.isdigit():
            return -1
        if y.isdigit():
            return 1
        return -1 if x < y else 1
    return (len(pa) > len(pb)) - (len(pa) < len(pb))


def sort_versions(versions: list[str], *, newest_first: bool = True) -> list[str]:
    unique = list(dict.fromkeys(versions))
    return sorted(unique, key=cmp_to_key(compare_versions), reverse=newest_first)
