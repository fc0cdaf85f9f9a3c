from __future__ import annotations

import functools
import logging
import os
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from .cancel import CancelToken
from .nix import Nix
from .resolver import PackageIdentity

logger = logging.getLogger(__name__)

PROFILE_PATH = Path(".pkgbox") / "nix" / "profile" / "default"

T = TypeVar("T")


@dataclass
class ProcessState:
    """State that lives exactly as long as the process. Never reset."""

    profile_reset_done: bool = False


@functools.cache
def process_state() -> ProcessState:
    return ProcessState()


@dataclass(frozen=True)
class ProfileItem:
    name: str
    attr_path: str = ""
    original_url: str = ""
    url: str = ""
    store_paths: tuple[str, ...] = ()

    def matches(self, identity: PackageIdentity) -> bool:
        if self.attr_path and identity.attr_path:
            if self.attr_path != identity.attr_path:
                return False
            return identity.flake_url in (self.original_url, self.url)
        return bool(identity.store_paths) and identity.store_paths.issubset(self.store_paths)


def _str(v: Any) -> str:
    return v if isinstance(v, str) else ""


def parse_profile_list(raw: Any) -> list[ProfileItem]:
    """Parses `nix profile list --json` (both the list and the mapping form of `elements`)."""
    if not isinstance(raw, dict):
        return []
    elements = raw.get("elements")
    if isinstance(elements, list):
        named = [(str(i), e) for i, e in enumerate(elements)]
    elif isinstance(elements, dict):
        named = [(str(k), e) for k, e in elements.items()]
    else:
        return []

    items: list[ProfileItem] = []
    for name, element in named:
        if not isinstance(element, dict) or element.get("active") is False:
            continue
        paths = element.get("storePaths")
        items.append(
            ProfileItem(
                name=name,
                attr_path=_str(element.get("attrPath")),
                original_url=_str(element.get("originalUrl")),
                url=_str(element.get("url")),
                store_paths=tuple(p for p in paths if isinstance(p, str)) if isinstance(paths, list) else (),
            )
        )
    return items


def diff(
    desired: Iterable[T],
    installed: list[ProfileItem],
    identity_of: Callable[[T], PackageIdentity],
) -> list[T]:
    """
    Returns the desired packages that no installed item provides.

    Each identity is computed once and looked up in indexes built from the
    installed items, so the cost is linear in both lists.
    """
    by_attr: set[tuple[str, str]] = set()
    paths: set[str] = set()
    for item in installed:
        if item.attr_path:
            for url in (item.original_url, item.url):
                if url:
                    by_attr.add((url, item.attr_path))
        else:
            paths.update(item.store_paths)

    missing: list[T] = []
    for pkg in desired:
        ident = identity_of(pkg)
        if ident.attr_path and (ident.flake_url, ident.attr_path) in by_attr:
            continue
        if ident.store_paths and ident.store_paths.issubset(paths):
            continue
        missing.append(pkg)
    return missing


class Profile:
    """The project's Nix profile."""

    def __init__(self, *, project_dir: Path, nix: Nix, state: ProcessState | None = None) -> None:
        self.path = project_dir / PROFILE_PATH
        self.nix = nix
        self.state = state or process_state()

    def ensure_dir(self) -> Path:
        try:
            self.reset_for_flakes()
        except OSError as e:
            logger.debug("resetting profile dir for flakes failed: %s", e)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        return self.path

    def reset_for_flakes(self) -> None:
        """Removes a profile left behind by a pre-flakes Nix, at most once per process."""
        if self.state.profile_reset_done:
            return
        if os.path.lexists(self.path):
            target = self.path.resolve()
            if (target / "manifest.nix").exists():
                logger.debug("removing pre-flakes profile at %s", self.path)
                self.path.unlink()
        self.state.profile_reset_done = True

    def items(self, *, token: CancelToken) -> list[ProfileItem]:
        self.ensure_dir()
        return parse_profile_list(self.nix.profile_list(self.path, token=token))

    def sync(self, desired_store_paths: list[str], *, token: CancelToken) -> tuple[list[str], list[str]]:
        """
        Makes the profile contain exactly `desired_store_paths`.

        Returns the (removed item names, installed store paths).
        """
        wanted = set(desired_store_paths)
        items = self.items(token=token)

        remove = [item for item in items if not item.store_paths or not set(item.store_paths).issubset(wanted)]
        self.nix.profile_remove(self.path, [item.name for item in remove], token=token)

        present: set[str] = set()
        for item in items:
            if item not in remove:
                present.update(item.store_paths)
        install = [p for p in dict.fromkeys(desired_store_paths) if p not in present]
        self.nix.profile_install(self.path, install, token=token)
        logger.debug("profile sync: removed %d, installed %d", len(remove), len(install))
        return [item.name for item in remove], install
