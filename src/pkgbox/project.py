from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TextIO

from .cache import BinaryCacheValidator
from .cancel import CancelToken
from .client import SearchService
from .errors import (
    INSTALL_ERROR_SUMMARY,
    CancelledError,
    CannotBuildOnSystemError,
    DownstreamToolError,
    InstallationError,
    NotFoundError,
    PkgboxError,
    UserError,
)
from .lockfile import LockedPackage, Lockfile
from .manifest import MANIFEST_FILENAME, Manifest
from .nix import Nix, RunxInstaller
from .packages import PackageRef
from .plugins import PluginManager, load_plugins
from .profile import ProcessState, Profile, diff
from .resolver import Resolver
from .shellgen import FLAKE_DIR, generate_for_print_env

logger = logging.getLogger(__name__)

SESSION_ENV = "PKGBOX_PROJECT_DIR"
REMOVE_ERROR_SUMMARY = "There was an error removing packages"
UPDATE_ERROR_SUMMARY = "There was an error updating packages"


@contextmanager
def _error_summary(summary: str) -> Iterator[None]:
    """Wraps internal failures of a public operation in a one-line summary."""
    try:
        yield
    except (UserError, CancelledError):
        raise
    except PkgboxError as e:
        raise InstallationError(summary) from e


class InstallMode(str, Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    # update both installs the new version and drops the old one
    UPDATE = "update"
    ENSURE = "ensure"


@dataclass(frozen=True)
class AddOpts:
    platforms: tuple[str, ...] = ()
    exclude_platforms: tuple[str, ...] = ()
    disable_plugin: bool = False
    patch_glibc: bool = False
    allow_insecure: bool = False

    @property
    def has_options(self) -> bool:
        return bool(self.platforms or self.exclude_platforms or self.allow_insecure)


@dataclass(frozen=True)
class AddResult:
    added: tuple[str, ...]
    unchanged: tuple[str, ...]
    replaced: tuple[str, ...]
    manifest_path: Path
    lock_path: Path


@dataclass(frozen=True)
class UpdateResult:
    updated: tuple[str, ...]
    unchanged: tuple[str, ...]


class Project:
    """
    A pkgbox project: the declared list, its lockfile and its Nix profile.

    Every public operation funnels into `ensure_state_is_up_to_date`, which is
    the only place the lockfile is written.
    """

    def __init__(
        self,
        *,
        project_dir: Path,
        search: SearchService,
        nix: Nix,
        cache: BinaryCacheValidator | None = None,
        plugins: PluginManager | None = None,
        runx: RunxInstaller | None = None,
        state: ProcessState | None = None,
        environ: Mapping[str, str] | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.project_dir = project_dir.expanduser().resolve()
        self.stderr = stderr or sys.stderr
        self.nix = nix
        self.manifest = Manifest.load(self.project_dir / MANIFEST_FILENAME)
        self.resolver = Resolver(search=search, nix=nix, nixpkgs_commit=self.manifest.nixpkgs_commit)
        self.lockfile = Lockfile(project_dir=self.project_dir, manifest=self.manifest, resolver=self.resolver)
        self.cache = cache or BinaryCacheValidator(nix=nix, stderr=self.stderr)
        self.plugins = plugins or PluginManager(
            project_dir=self.project_dir,
            plugins=load_plugins(self.project_dir / "plugins"),
        )
        self.runx = runx or RunxInstaller()
        self.profile = Profile(project_dir=self.project_dir, nix=nix, state=state)
        self._environ = os.environ if environ is None else environ

    # messaging

    def _info(self, message: str) -> None:
        print(f"Info: {message}", file=self.stderr)

    def _warn(self, message: str) -> None:
        print(f"Warning: {message}", file=self.stderr)

    # environment

    def is_env_enabled(self) -> bool:
        return self._environ.get(SESSION_ENV) == str(self.project_dir)

    def is_direnv_active(self) -> bool:
        return self._environ.get("DIRENV_DIR") == "-" + str(self.project_dir)

    def installable_packages(self, system: str) -> list[PackageRef]:
        return [p for p in self.manifest.packages if p.is_installable_on(system)]

    # public operations

    def add(self, names: Iterable[str], opts: AddOpts | None = None, *, token: CancelToken | None = None) -> AddResult:
        opts = opts or AddOpts()
        token = token or CancelToken()
        pkgs = [PackageRef(n) for n in dict.fromkeys(n.strip() for n in names if n.strip())]

        unchanged: list[str] = []
        replaced: list[str] = []
        # Versioned names of everything requested, including unchanged ones,
        # so options like allow-insecure land on the right entry.
        added_names: list[str] = []
        with _error_summary(INSTALL_ERROR_SUMMARY):
            for pkg in pkgs:
                versioned = pkg.versioned()
                if self.manifest.get(versioned) is not None:
                    added_names.append(versioned)
                    unchanged.append(versioned)
                    self._info(f'Package "{versioned}" already in {MANIFEST_FILENAME}')
                    continue

                found = self.manifest.find_by_name(pkg.canonical_name)
                if found is not None:
                    self._info(f'Replacing package "{found.raw}" in {MANIFEST_FILENAME}')
                    self.manifest.remove(found.raw)
                    self.lockfile.drop(found.raw)
                    replaced.append(found.raw)

                name_for_config = self._validate_new_package(pkg, token=token)
                self._info(f'Adding package "{name_for_config}" to {MANIFEST_FILENAME}')
                self.manifest.add(name_for_config)
                added_names.append(name_for_config)

            # Options change how the environment evaluates, so they go in first.
            self._set_package_options(added_names, opts, token=token)
            self.ensure_state_is_up_to_date(InstallMode.INSTALL, token=token)

        self.manifest.save()
        self._print_post_add_message(pkgs, unchanged, opts)
        return AddResult(
            added=tuple(n for n in added_names if n not in unchanged),
            unchanged=tuple(unchanged),
            replaced=tuple(replaced),
            manifest_path=self.manifest.path,
            lock_path=self.lockfile.path,
        )

    def _validate_new_package(self, pkg: PackageRef, *, token: CancelToken) -> str:
        """Returns the name to record in the manifest for `pkg`."""
        versioned_pkg = PackageRef(pkg.versioned())
        try:
            ok = self.resolver.validate_exists(versioned_pkg, token=token)
        except CannotBuildOnSystemError as e:
            # The user can still exclude this platform later.
            logger.debug("%s", e)
            ok = True
        if ok:
            return versioned_pkg.raw
        if not versioned_pkg.is_resolver_managed:
            raise self.resolver.not_found(pkg, token=token)
        if not self.resolver.exists_in_legacy_nixpkgs(pkg.name, token=token):
            raise self.resolver.not_found(pkg, token=token)
        return pkg.raw

    def _set_package_options(self, names: list[str], opts: AddOpts, *, token: CancelToken) -> None:
        for name in names:
            self.manifest.add_platforms(self.stderr, name, list(opts.platforms))
            self.manifest.exclude_platforms(self.stderr, name, list(opts.exclude_platforms))
            self.manifest.set_disable_plugin(name, opts.disable_plugin)
            self.manifest.set_patch_glibc(name, opts.patch_glibc)

        if not opts.allow_insecure:
            return
        # Resolving records the entry in memory only; it is saved with everything else.
        self.nix.allow_insecure = True
        for name in names:
            locked = self.lockfile.resolve(name, token=token)
            if not locked.allow_insecure:
                print(f"Allowing insecure for {name}", file=self.stderr)
            locked.allow_insecure = True
            pkg = self.manifest.get(name)
            if pkg is not None:
                pkg.allow_insecure = True

    def _print_post_add_message(self, pkgs: list[PackageRef], unchanged: list[str], opts: AddOpts) -> None:
        for pkg in pkgs:
            declared = self.manifest.find_by_name(pkg.canonical_name) or pkg
            readme = self.plugins.readme(declared)
            if readme:
                print(readme, file=self.stderr)

        if opts.has_options:
            return
        if len(unchanged) == 1:
            self._info(f'Package "{unchanged[0]}" was already in {MANIFEST_FILENAME} and was not modified')
        elif len(unchanged) > 1:
            self._info(
                f"Packages {', '.join(unchanged)} were already in {MANIFEST_FILENAME} and were not modified"
            )

    def remove(self, *names: str, token: CancelToken | None = None) -> tuple[str, ...]:
        token = token or CancelToken()
        to_uninstall: list[str] = []
        missing: list[str] = []
        for name in dict.fromkeys(names):
            found = self.manifest.find_by_name(name)
            if found is None:
                missing.append(name)
                continue
            to_uninstall.append(found.raw)
            self.manifest.remove(found.raw)

        if missing:
            self._warn(
                f"the following packages were not found in your {MANIFEST_FILENAME}: {', '.join(missing)}"
            )

        with _error_summary(REMOVE_ERROR_SUMMARY):
            self.ensure_state_is_up_to_date(InstallMode.UNINSTALL, token=token)

        self.plugins.remove(to_uninstall)
        self.manifest.save()
        return tuple(to_uninstall)

    def update(self, names: Iterable[str] = (), *, token: CancelToken | None = None) -> UpdateResult:
        token = token or CancelToken()
        targets: list[PackageRef] = []
        for name in dict.fromkeys(names):
            found = self.manifest.find_by_name(name)
            if found is None:
                raise NotFoundError(f"Package {name} not found in {MANIFEST_FILENAME}")
            targets.append(found)
        if not targets:
            targets = list(self.manifest.packages)

        updated: list[str] = []
        unchanged: list[str] = []
        with _error_summary(UPDATE_ERROR_SUMMARY):
            for pkg in targets:
                old = self.lockfile.get(pkg.raw)
                self.lockfile.drop(pkg.raw)
                new = self.lockfile.resolve(pkg.raw, token=token)
                if old is not None:
                    new.allow_insecure = old.allow_insecure
                    new.uninstallable = old.uninstallable
                if old is not None and old.resolved == new.resolved:
                    unchanged.append(pkg.raw)
                    self._info(f"Already up-to-date {pkg.raw} {new.version}".rstrip())
                    continue
                updated.append(pkg.raw)
                before = old.version if old is not None and old.version else "(new)"
                self._info(f"Updating {pkg.raw} {before} -> {new.version or new.resolved}")

            self.ensure_state_is_up_to_date(InstallMode.UPDATE, token=token)
        return UpdateResult(updated=tuple(updated), unchanged=tuple(unchanged))

    def install(self, *, token: CancelToken | None = None) -> None:
        with _error_summary(INSTALL_ERROR_SUMMARY):
            self.ensure_state_is_up_to_date(InstallMode.ENSURE, token=token or CancelToken())
        self._info("Finished installing packages.")

    def ensure(self, *, token: CancelToken | None = None) -> None:
        with _error_summary(INSTALL_ERROR_SUMMARY):
            self.ensure_state_is_up_to_date(InstallMode.ENSURE, token=token or CancelToken())

    # reconciliation

    def _remove_local_quietly(self) -> None:
        try:
            self.lockfile.remove_local()
        except OSError as e:
            logger.debug("could not remove local lock: %s", e)

    def ensure_state_is_up_to_date(self, mode: InstallMode, *, token: CancelToken) -> None:
        """
        Brings the profile, generated files and lockfile in line with the manifest.

        Outside a pkgbox session, install/uninstall/update skip the slow profile
        sync and drop the local lock so the next session recomputes. Nothing is
        committed unless every step succeeds.
        """
        with ExitStack() as stack:
            if mode != InstallMode.ENSURE and not self.is_env_enabled():
                stack.callback(self._remove_local_quietly)

            up_to_date = self.lockfile.is_up_to_date_and_installed()
            if mode == InstallMode.ENSURE:
                if up_to_date:
                    logger.debug("state is up to date")
                    return
                print("Ensuring packages are installed.", file=self.stderr)

            system = self.resolver.system(token=token)

            # Must run before anything evaluates the environment, which fails
            # with unhelpful errors for uninstallable packages.
            self._validate_packages_to_be_installed(system, token=token)

            installables = self.installable_packages(system)
            for pkg in installables:
                self.plugins.create(pkg)

            self._install_runx_packages(installables, token=token)
            self._generate_env(system, token=token)
            self.plugins.remove_invalid_symlinks()

            if mode == InstallMode.ENSURE or self.is_env_enabled():
                env = self._compute_env(token=token)
                self.profile.sync(_build_inputs(env), token=token)
            elif mode in (InstallMode.INSTALL, InstallMode.UPDATE):
                self._install_packages_to_store(system, token=token)

            self.lockfile.tidy()
            for pkg in self.manifest.packages:
                self.lockfile.ensure_uninstallable_is_in_lockfile(pkg, system=system, token=token)

            if self.is_env_enabled() and not up_to_date and not self.is_direnv_active():
                self._warn("Your shell environment may be out of date. Re-enter the pkgbox shell to update it.")

            token.raise_if_cancelled()
            self.lockfile.save()

    def _locked_nix_packages(self, system: str, *, token: CancelToken) -> list[tuple[PackageRef, LockedPackage]]:
        return [
            (pkg, self.lockfile.resolve(pkg.raw, token=token))
            for pkg in self.installable_packages(system)
            if pkg.is_nix
        ]

    def packages_to_install_in_profile(
        self, system: str, *, token: CancelToken
    ) -> list[tuple[PackageRef, LockedPackage]]:
        items = self.profile.items(token=token)
        locked = self._locked_nix_packages(system, token=token)
        self.cache.fill_narinfo_cache([lp for _, lp in locked], system=system, token=token)
        return diff(
            locked,
            items,
            lambda pair: self.resolver.identity(pair[0], pair[1], token=token),
        )

    def _validate_packages_to_be_installed(self, system: str, *, token: CancelToken) -> None:
        for pkg, locked in self.packages_to_install_in_profile(system, token=token):
            identity = self.resolver.identity(pkg, locked, token=token)
            self.cache.validate(pkg, locked, identity, system=system, token=token)

    def _install_runx_packages(self, installables: list[PackageRef], *, token: CancelToken) -> None:
        for pkg in installables:
            if not pkg.is_runx:
                continue
            locked = self.lockfile.resolve(pkg.raw, token=token)
            try:
                self.runx.install(locked.resolved, token=token)
            except DownstreamToolError as e:
                raise PkgboxError(f"error installing runx package {pkg.raw}: {e}") from e

    def _generate_env(self, system: str, *, token: CancelToken) -> None:
        locked = [lp for _, lp in self._locked_nix_packages(system, token=token)]
        if any(lp.allow_insecure for lp in locked):
            self.nix.allow_insecure = True
        generate_for_print_env(
            self.project_dir,
            locked,
            system=system,
            nixpkgs_url=f"github:NixOS/nixpkgs/{self.resolver.nixpkgs_commit}",
        )

    def _compute_env(self, *, token: CancelToken) -> dict:
        return self.nix.print_dev_env(self.project_dir / FLAKE_DIR, token=token)

    def _install_packages_to_store(self, system: str, *, token: CancelToken) -> None:
        """
        Builds missing packages into the Nix store without touching the profile,
        so the next session can finish the install offline.
        """
        missing = self.packages_to_install_in_profile(system, token=token)
        if not missing:
            return
        installables = [self.resolver.identity(p, lp, token=token).installable for p, lp in missing]
        names = " ".join(p.raw for p, _ in missing)
        self._info(f"Installing to the nix store: {names}. This may take a brief while.")
        self.nix.build(installables, flags=["--no-link"], token=token)


def _build_inputs(env: dict) -> list[str]:
    variables = env.get("variables")
    entry = variables.get("buildInputs") if isinstance(variables, dict) else None
    value = entry.get("value") if isinstance(entry, dict) else None
    if not isinstance(value, str) or not value.strip():
        return []
    return value.split()
