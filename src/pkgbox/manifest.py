from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, TextIO

from .config import write_json_atomic
from .errors import InvalidPlatformError, PkgboxError
from .packages import PackageRef

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "pkgbox.json"

SUPPORTED_PLATFORMS = (
    "aarch64-darwin",
    "aarch64-linux",
    "armv7l-linux",
    "i686-linux",
    "x86_64-darwin",
    "x86_64-linux",
)


def _validate_platforms(platforms: list[str]) -> None:
    for platform in platforms:
        if platform not in SUPPORTED_PLATFORMS:
            raise InvalidPlatformError(
                f"Unsupported platform: {platform}. Valid platforms are: {', '.join(SUPPORTED_PLATFORMS)}"
            )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()]


def _parse_entry(raw: Any) -> PackageRef | None:
    if isinstance(raw, str):
        return PackageRef(raw) if raw.strip() else None
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str) or not raw["name"].strip():
        return None
    return PackageRef(
        raw["name"],
        platforms=_string_list(raw.get("platforms")),
        excluded_platforms=_string_list(raw.get("excluded_platforms")),
        disable_plugin=bool(raw.get("disable_plugin", False)),
        patch_glibc=bool(raw.get("patch_glibc", False)),
    )


def _entry_payload(pkg: PackageRef) -> str | dict[str, Any]:
    item: dict[str, Any] = {"name": pkg.raw}
    if pkg.platforms:
        item["platforms"] = list(pkg.platforms)
    if pkg.excluded_platforms:
        item["excluded_platforms"] = list(pkg.excluded_platforms)
    if pkg.disable_plugin:
        item["disable_plugin"] = True
    if pkg.patch_glibc:
        item["patch_glibc"] = True
    if len(item) == 1:
        return pkg.raw
    return item


class Manifest:
    """The declared package list of a project (`pkgbox.json`)."""

    def __init__(self, path: Path, packages: list[PackageRef] | None = None, extra: dict[str, Any] | None = None) -> None:
        self.path = path
        self.packages: list[PackageRef] = list(packages or [])
        self._extra = dict(extra or {})

    @classmethod
    def load(cls, path: Path) -> "Manifest":
        if not path.exists():
            return cls(path)
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PkgboxError(f"Could not parse {path}: {e}") from e
        if not isinstance(raw, dict):
            raise PkgboxError(f"Could not parse {path}: expected a JSON object")
        packages: list[PackageRef] = []
        entries = raw.get("packages")
        for entry in entries if isinstance(entries, list) else []:
            pkg = _parse_entry(entry)
            if pkg is not None:
                packages.append(pkg)
        extra = {k: v for k, v in raw.items() if k != "packages"}
        return cls(path, packages, extra)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self._extra)
        payload["packages"] = [_entry_payload(p) for p in self.packages]
        return payload

    def save(self) -> None:
        write_json_atomic(self.path, self.to_payload())

    def content_hash(self) -> str:
        body = json.dumps(self.to_payload(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(body.encode("utf-8")).hexdigest()

    @property
    def nixpkgs_commit(self) -> str | None:
        nixpkgs = self._extra.get("nixpkgs")
        if isinstance(nixpkgs, dict) and isinstance(nixpkgs.get("commit"), str):
            return nixpkgs["commit"].strip() or None
        return None

    def names(self) -> list[str]:
        return [p.raw for p in self.packages]

    def get(self, raw: str) -> PackageRef | None:
        for pkg in self.packages:
            if pkg.raw == raw:
                return pkg
        return None

    def find_by_name(self, name: str) -> PackageRef | None:
        """Exact raw match first, then a unique canonical-name match."""
        exact = self.get(name)
        if exact is not None:
            return exact
        canonical = PackageRef(name).canonical_name
        matches = [p for p in self.packages if p.canonical_name == canonical]
        if len(matches) == 1:
            return matches[0]
        return None

    def add(self, raw: str) -> PackageRef:
        existing = self.get(raw)
        if existing is not None:
            return existing
        pkg = PackageRef(raw)
        self.packages.append(pkg)
        return pkg

    def remove(self, raw: str) -> None:
        self.packages = [p for p in self.packages if p.raw != raw]

    def _require(self, raw: str) -> PackageRef:
        pkg = self.get(raw)
        if pkg is None:
            raise PkgboxError(f"Package {raw} not found in {MANIFEST_FILENAME}")
        return pkg

    def add_platforms(self, stderr: TextIO, raw: str, platforms: list[str]) -> None:
        if not platforms:
            return
        _validate_platforms(platforms)
        pkg = self._require(raw)
        for platform in platforms:
            if platform in pkg.excluded_platforms:
                pkg.excluded_platforms.remove(platform)
                print(
                    f"Warning: Removing platform {platform} from excluded_platforms of {raw}",
                    file=stderr,
                )
            if platform not in pkg.platforms:
                pkg.platforms.append(platform)
        logger.debug("platforms of %s: %s", raw, pkg.platforms)

    def exclude_platforms(self, stderr: TextIO, raw: str, platforms: list[str]) -> None:
        if not platforms:
            return
        _validate_platforms(platforms)
        pkg = self._require(raw)
        for platform in platforms:
            if platform in pkg.platforms:
                pkg.platforms.remove(platform)
                print(f"Warning: Removing platform {platform} from platforms of {raw}", file=stderr)
            if platform not in pkg.excluded_platforms:
                pkg.excluded_platforms.append(platform)
        logger.debug("excluded platforms of %s: %s", raw, pkg.excluded_platforms)

    def set_disable_plugin(self, raw: str, value: bool) -> None:
        if value:
            self._require(raw).disable_plugin = True

    def set_patch_glibc(self, raw: str, value: bool) -> None:
        if value:
            self._require(raw).patch_glibc = True
