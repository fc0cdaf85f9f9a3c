from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .cancel import CancelToken
from .config import write_json_atomic
from .errors import PkgboxError
from .manifest import Manifest
from .packages import PackageRef

if TYPE_CHECKING:
    from .resolver import Resolver

logger = logging.getLogger(__name__)

LOCK_FILENAME = "pkgbox.lock"
LOCAL_LOCK_PATH = Path(".pkgbox") / "local.lock"
LOCKFILE_VERSION = "1"


@dataclass
class LockedPackage:
    resolved: str
    version: str = ""
    allow_insecure: bool = False
    uninstallable: bool = False
    # system -> output store paths, as reported by the search service
    systems: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def store_paths(self, system: str) -> tuple[str, ...]:
        return self.systems.get(system, ())

    def to_payload(self) -> dict[str, Any]:
        item: dict[str, Any] = {"resolved": self.resolved}
        if self.version:
            item["version"] = self.version
        if self.allow_insecure:
            item["allow_insecure"] = True
        if self.uninstallable:
            item["uninstallable"] = True
        if self.systems:
            item["systems"] = {s: {"store_paths": list(p)} for s, p in sorted(self.systems.items())}
        return item

    @classmethod
    def from_payload(cls, raw: Any) -> "LockedPackage | None":
        if not isinstance(raw, dict) or not isinstance(raw.get("resolved"), str):
            return None
        systems: dict[str, tuple[str, ...]] = {}
        raw_systems = raw.get("systems")
        if isinstance(raw_systems, dict):
            for system, info in raw_systems.items():
                paths = info.get("store_paths") if isinstance(info, dict) else None
                if isinstance(paths, list):
                    systems[system] = tuple(p for p in paths if isinstance(p, str))
        version = raw.get("version")
        return cls(
            resolved=raw["resolved"],
            version=version if isinstance(version, str) else "",
            allow_insecure=bool(raw.get("allow_insecure", False)),
            uninstallable=bool(raw.get("uninstallable", False)),
            systems=systems,
        )


def _hash_payload(payload: Any) -> str:
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class Lockfile:
    """
    Durable mapping from declared references to resolved packages (`pkgbox.lock`).

    The local section (`.pkgbox/local.lock`) holds the signatures of the declared
    list and of the lockfile as of the last successful reconciliation. It is
    machine-local and may be deleted at any time to force a recompute.
    """

    def __init__(self, *, project_dir: Path, manifest: Manifest, resolver: "Resolver") -> None:
        self.project_dir = project_dir
        self.manifest = manifest
        self.resolver = resolver
        self.path = project_dir / LOCK_FILENAME
        self.local_path = project_dir / LOCAL_LOCK_PATH
        self.packages: dict[str, LockedPackage] = self._load()

    def _load(self) -> dict[str, LockedPackage]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PkgboxError(f"Could not parse {self.path}: {e}") from e
        packages: dict[str, LockedPackage] = {}
        items = raw.get("packages") if isinstance(raw, dict) else None
        for key, item in items.items() if isinstance(items, dict) else []:
            locked = LockedPackage.from_payload(item)
            if isinstance(key, str) and locked is not None:
                packages[key] = locked
        return packages

    def to_payload(self) -> dict[str, Any]:
        return {
            "lockfile_version": LOCKFILE_VERSION,
            "packages": {k: self.packages[k].to_payload() for k in sorted(self.packages)},
        }

    def content_hash(self) -> str:
        return _hash_payload(self.to_payload())

    def get(self, raw: str) -> LockedPackage | None:
        return self.packages.get(raw)

    def set(self, raw: str, locked: LockedPackage) -> None:
        self.packages[raw] = locked
        self.resolver.invalidate(PackageRef(raw).canonical_name)

    def drop(self, raw: str) -> None:
        if self.packages.pop(raw, None) is not None:
            self.resolver.invalidate(PackageRef(raw).canonical_name)

    def resolve(self, raw: str, *, token: CancelToken) -> LockedPackage:
        """Returns the locked entry, resolving and recording it in memory if missing."""
        locked = self.packages.get(raw)
        if locked is not None:
            return locked
        pkg = self.manifest.get(raw) or PackageRef(raw)
        locked = self.resolver.resolve(pkg, token=token)
        logger.debug("resolved %s -> %s", raw, locked.resolved)
        self.set(raw, locked)
        return locked

    def legacy_nixpkgs_path(self, raw: str) -> str:
        return self.resolver.legacy_nixpkgs_path(raw)

    def tidy(self) -> None:
        declared = set(self.manifest.names())
        for key in sorted(self.packages):
            if key not in declared:
                logger.debug("tidy: dropping %s", key)
                self.drop(key)

    def ensure_uninstallable_is_in_lockfile(self, pkg: PackageRef, *, system: str, token: CancelToken) -> None:
        if pkg.is_installable_on(system):
            # Stale once the platform is allowed again.
            locked = self.packages.get(pkg.raw)
            if locked is not None and locked.uninstallable:
                locked.uninstallable = False
            return
        locked = self.resolve(pkg.raw, token=token)
        locked.uninstallable = True

    def _read_local(self) -> dict[str, Any]:
        if not self.local_path.exists():
            return {}
        try:
            raw = json.loads(self.local_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return {}
        return raw if isinstance(raw, dict) else {}

    def is_up_to_date_and_installed(self) -> bool:
        local = self._read_local()
        if not local or not self.path.exists():
            return False
        return (
            local.get("config_hash") == self.manifest.content_hash()
            and local.get("lockfile_hash") == self.content_hash()
        )

    def remove_local(self) -> None:
        try:
            self.local_path.unlink()
        except FileNotFoundError:
            pass

    def save(self) -> None:
        write_json_atomic(self.path, self.to_payload())
        write_json_atomic(
            self.local_path,
            {"config_hash": self.manifest.content_hash(), "lockfile_hash": self.content_hash()},
        )
