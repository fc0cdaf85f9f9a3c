from __future__ import annotations

import logging
from dataclasses import dataclass

from .cancel import CancelToken
from .client import PackageVersion, SearchService
from .errors import CannotBuildOnSystemError, NotFoundError
from .lockfile import LockedPackage
from .nix import Nix
from .packages import LATEST, PackageRef

logger = logging.getLogger(__name__)

DEFAULT_NIXPKGS_COMMIT = "f80ac848e3d6f0c12c52758c0f25c10c97ca3b62"
_QUALIFIED_PREFIXES = ("legacyPackages.", "packages.")


@dataclass(frozen=True)
class PackageIdentity:
    """What a package resolves to in the host profile, independent of how it was spelled."""

    flake_url: str
    attr_path: str
    store_paths: frozenset[str] = frozenset()

    @property
    def installable(self) -> str:
        if not self.attr_path:
            return self.flake_url
        return f"{self.flake_url}#{self.attr_path}"


def _locator(pkg: PackageVersion, attr_path: str) -> str:
    return f"github:NixOS/nixpkgs/{pkg.commit_hash}#{attr_path}"


class Resolver:
    """
    Turns package references into locked packages.

    Resolver-managed names go through the search service, with a fallback to
    the project's default nixpkgs commit. Flake references and `runx:`
    references are locked as written.
    """

    def __init__(self, *, search: SearchService, nix: Nix, nixpkgs_commit: str | None = None) -> None:
        self.search = search
        self.nix = nix
        self.nixpkgs_commit = nixpkgs_commit or DEFAULT_NIXPKGS_COMMIT
        self._identities: dict[str, tuple[str, PackageIdentity]] = {}

    def system(self, *, token: CancelToken) -> str:
        return self.nix.system(token=token)

    def legacy_nixpkgs_path(self, raw: str) -> str:
        attr = raw.removeprefix("nixpkgs#")
        return f"github:NixOS/nixpkgs/{self.nixpkgs_commit}#{attr}"

    def exists_in_legacy_nixpkgs(self, raw: str, *, token: CancelToken) -> bool:
        return bool(self.nix.search(self.legacy_nixpkgs_path(raw), token=token))

    def validate_exists(self, pkg: PackageRef, *, token: CancelToken) -> bool:
        """
        Checks that `pkg` exists.

        Raises CannotBuildOnSystemError if the search service knows the package
        but has no build for the current system.
        """
        if pkg.is_runx:
            return True
        if pkg.is_flake_ref:
            return bool(self.nix.search(self._flake_locator(pkg), token=token))
        found = self.search.resolve(pkg.name, pkg.version or LATEST, token=token)
        if found is None:
            return False
        system = self.system(token=token)
        if found.systems and system not in found.systems:
            raise CannotBuildOnSystemError(pkg.versioned(), system)
        return True

    def not_found(self, pkg: PackageRef, *, token: CancelToken) -> NotFoundError:
        if pkg.is_resolver_managed:
            versions = self.search.versions(pkg.name, token=token)
            if versions:
                shown = ", ".join(versions[:10])
                return NotFoundError(f"Package {pkg.raw} not found. Available versions: {shown}")
        return NotFoundError(f"Package {pkg.raw} not found")

    def _flake_locator(self, pkg: PackageRef) -> str:
        if pkg.raw.startswith("nixpkgs#"):
            return self.legacy_nixpkgs_path(pkg.raw)
        return pkg.raw

    def resolve(self, pkg: PackageRef, *, token: CancelToken) -> LockedPackage:
        if pkg.is_runx:
            return LockedPackage(resolved=pkg.raw if pkg.version else f"{pkg.name}@{LATEST}")
        if pkg.is_flake_ref:
            return LockedPackage(resolved=self._flake_locator(pkg))

        found = self.search.resolve(pkg.name, pkg.version or LATEST, token=token)
        if found is None:
            if not self.exists_in_legacy_nixpkgs(pkg.name, token=token):
                raise self.not_found(pkg, token=token)
            logger.debug("%s not in search index, using legacy nixpkgs", pkg.raw)
            return LockedPackage(resolved=self.legacy_nixpkgs_path(pkg.name), version=pkg.version or "")

        system = self.system(token=token)
        info = found.systems.get(system)
        attr_path = info.attr_path if info is not None else found.attr_path
        systems = {s: tuple(o.path for o in i.outputs) for s, i in found.systems.items() if i.outputs}
        return LockedPackage(resolved=_locator(found, attr_path), version=found.version, systems=systems)

    def invalidate(self, canonical_name: str) -> None:
        self._identities.pop(canonical_name, None)

    def identity(self, pkg: PackageRef, locked: LockedPackage, *, token: CancelToken) -> PackageIdentity:
        """
        Normalizes the locked locator into a profile identity.

        Normalizing the attribute path (and, for packages the search service did
        not report outputs for, evaluating the store path) means asking Nix, so results are memoized
        per canonical name for the lifetime of the process.
        """
        cached = self._identities.get(pkg.canonical_name)
        if cached is not None and cached[0] == locked.resolved:
            return cached[1]

        system = self.system(token=token)
        url, _, attr = locked.resolved.partition("#")
        if attr and not attr.startswith(_QUALIFIED_PREFIXES):
            attr = self._normalize_attr_path(url, attr, system=system, token=token)
        store_paths = frozenset(locked.store_paths(system))
        if not store_paths and attr:
            # Only the search service reports outputs; profile items are matched by store path.
            out = self.nix.out_path(f"{url}#{attr}", token=token)
            if out:
                store_paths = frozenset({out})
        ident = PackageIdentity(flake_url=url, attr_path=attr, store_paths=store_paths)
        self._identities[pkg.canonical_name] = (locked.resolved, ident)
        return ident

    def _normalize_attr_path(self, url: str, attr: str, *, system: str, token: CancelToken) -> str:
        results = self.nix.search(f"{url}#{attr}", token=token)
        for key in sorted(results):
            if key.endswith("." + attr):
                return key
        if results:
            return sorted(results)[0]
        return f"legacyPackages.{system}.{attr}"
