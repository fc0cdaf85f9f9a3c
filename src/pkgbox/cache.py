from __future__ import annotations

import logging
import sys
from typing import TextIO

import httpx

from .cancel import CancelToken
from .config import DEFAULT_CACHE_URL, DEFAULT_TIMEOUT_S
from .errors import DownstreamToolError, PlatformIncompatibleError, ValidationError
from .lockfile import LockedPackage
from .nix import Nix, hash_from_nixpkgs_url, is_github_nixpkgs_url
from .packages import PackageRef
from .resolver import PackageIdentity

logger = logging.getLogger(__name__)


def _store_hash(store_path: str) -> str:
    # /nix/store/<hash>-<name>
    base = store_path.rstrip("/").rsplit("/", 1)[-1]
    return base.split("-", 1)[0]


class BinaryCacheValidator:
    """Decides whether a locked package can be installed before anything is evaluated."""

    def __init__(
        self,
        *,
        nix: Nix,
        cache_url: str = DEFAULT_CACHE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.Client | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.nix = nix
        self.cache_url = cache_url.rstrip("/")
        self._http = http or httpx.Client(timeout=timeout_s, follow_redirects=True)
        self._stderr = stderr or sys.stderr
        self._narinfo: dict[str, bool] = {}
        self._prefetched: set[str] = set()

    def close(self) -> None:
        self._http.close()

    def _narinfo_exists(self, store_path: str, *, token: CancelToken) -> bool:
        if store_path in self._narinfo:
            return self._narinfo[store_path]
        token.raise_if_cancelled()
        url = f"{self.cache_url}/{_store_hash(store_path)}.narinfo"
        try:
            resp = self._http.head(url)
        except httpx.HTTPError as e:
            raise ValidationError(f"Could not query binary cache for {store_path}: {e}") from e
        if resp.status_code == 200:
            found = True
        elif resp.status_code in (403, 404):
            found = False
        else:
            raise ValidationError(f"Binary cache returned HTTP {resp.status_code} for {store_path}")
        logger.debug("narinfo %s: %s", store_path, "hit" if found else "miss")
        self._narinfo[store_path] = found
        return found

    def fill_narinfo_cache(self, locked: list[LockedPackage], *, system: str, token: CancelToken) -> None:
        for item in locked:
            for path in item.store_paths(system):
                self._narinfo_exists(path, token=token)

    def is_in_binary_cache(self, locked: LockedPackage, *, system: str, token: CancelToken) -> bool:
        paths = locked.store_paths(system)
        if not paths:
            return False
        return all(self._narinfo_exists(p, token=token) for p in paths)

    def ensure_nixpkgs_prefetched(self, commit: str, *, token: CancelToken) -> None:
        if commit in self._prefetched:
            return
        print(f"Info: Ensuring nixpkgs registry {commit[:8]} is downloaded.", file=self._stderr)
        try:
            self.nix.prefetch(f"github:NixOS/nixpkgs/{commit}", token=token)
        except DownstreamToolError as e:
            raise ValidationError(f"Failed to download nixpkgs {commit}: {e}") from e
        self._prefetched.add(commit)

    def validate_installs_on_system(self, identity: PackageIdentity, *, token: CancelToken) -> bool:
        return self.nix.eval_succeeds(identity.installable, token=token)

    def validate(
        self,
        pkg: PackageRef,
        locked: LockedPackage,
        identity: PackageIdentity,
        *,
        system: str,
        token: CancelToken,
    ) -> None:
        if self.is_in_binary_cache(locked, system=system, token=token):
            return
        if not is_github_nixpkgs_url(locked.resolved):
            return
        commit = hash_from_nixpkgs_url(locked.resolved)
        if commit:
            self.ensure_nixpkgs_prefetched(commit, token=token)
        if not self.validate_installs_on_system(identity, token=token):
            raise PlatformIncompatibleError(pkg.raw, system)
