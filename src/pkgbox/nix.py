from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import time
from pathlib import Path
from typing import Any

from .cancel import CancelToken
from .errors import DownstreamToolError, PkgboxError

logger = logging.getLogger(__name__)

EXPERIMENTAL_FEATURES = ("--extra-experimental-features", "nix-command flakes")

_GITHUB_NIXPKGS_RE = re.compile(r"^github:NixOS/nixpkgs/([0-9a-f]{7,40})(#.*)?$", re.IGNORECASE)


def is_github_nixpkgs_url(url: str) -> bool:
    return _GITHUB_NIXPKGS_RE.match(url) is not None


def hash_from_nixpkgs_url(url: str) -> str | None:
    m = _GITHUB_NIXPKGS_RE.match(url)
    return m.group(1) if m else None


class Nix:
    """Thin wrapper around the `nix` command line."""

    def __init__(self, *, nix_bin: str = "nix", system: str | None = None) -> None:
        self.nix_bin = nix_bin
        self.allow_insecure = False
        self._system = system

    def _run(
        self,
        args: list[str],
        *,
        token: CancelToken,
        capture_stderr: bool = True,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        token.raise_if_cancelled()
        cmd = [self.nix_bin, *EXPERIMENTAL_FEATURES, *args]
        env = dict(os.environ)
        if self.allow_insecure:
            env["NIXPKGS_ALLOW_INSECURE"] = "1"
        started = time.monotonic()
        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE if capture_stderr else None,
                text=True,
                env=env,
            )
        except FileNotFoundError as e:
            raise PkgboxError(f"Could not find `{self.nix_bin}`. Is Nix installed?") from e
        logger.debug("ran %s in %.2fs (exit %d)", " ".join(args[:2]), time.monotonic() - started, proc.returncode)
        token.raise_if_cancelled()
        if check and proc.returncode != 0:
            raise DownstreamToolError(tuple(cmd), proc.returncode, proc.stderr or "")
        return proc

    def system(self, *, token: CancelToken) -> str:
        if self._system is None:
            proc = self._run(
                ["eval", "--impure", "--raw", "--expr", "builtins.currentSystem"],
                token=token,
            )
            self._system = proc.stdout.strip()
        return self._system

    def search(self, installable: str, *, token: CancelToken) -> dict[str, Any]:
        """Returns the matching attribute paths, or {} when the installable does not exist."""
        proc = self._run(["search", "--json", installable, "^"], token=token, check=False)
        if proc.returncode != 0:
            logger.debug("search for %s failed: %s", installable, (proc.stderr or "").strip())
            return {}
        try:
            data = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def build(self, installables: list[str], *, flags: list[str], token: CancelToken) -> None:
        self._run(["build", *flags, *installables], token=token, capture_stderr=False)

    def out_path(self, installable: str, *, token: CancelToken) -> str | None:
        """Returns the store path `installable` evaluates to, or None when it does not evaluate."""
        proc = self._run(["eval", "--raw", f"{installable}.outPath"], token=token, check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def eval_succeeds(self, installable: str, *, token: CancelToken) -> bool:
        return self.out_path(installable, token=token) is not None

    def prefetch(self, flake_ref: str, *, token: CancelToken) -> None:
        self._run(["flake", "prefetch", flake_ref], token=token)

    def print_dev_env(self, flake_dir: Path, *, token: CancelToken) -> dict[str, Any]:
        proc = self._run(["print-dev-env", "--json", str(flake_dir)], token=token)
        data = json.loads(proc.stdout or "{}")
        return data if isinstance(data, dict) else {}

    def profile_list(self, profile_dir: Path, *, token: CancelToken) -> Any:
        if not profile_dir.exists() and not profile_dir.is_symlink():
            return {"elements": {}}
        proc = self._run(["profile", "list", "--json", "--profile", str(profile_dir)], token=token)
        return json.loads(proc.stdout or "{}")

    def profile_install(self, profile_dir: Path, installables: list[str], *, token: CancelToken) -> None:
        if not installables:
            return
        self._run(
            ["profile", "install", "--profile", str(profile_dir), *installables],
            token=token,
            capture_stderr=False,
        )

    def profile_remove(self, profile_dir: Path, names: list[str], *, token: CancelToken) -> None:
        if not names:
            return
        self._run(["profile", "remove", "--profile", str(profile_dir), *names], token=token)


class RunxInstaller:
    """Installs `runx:` packages, which live outside the Nix profile."""

    def __init__(self, *, runx_bin: str = "runx") -> None:
        self.runx_bin = runx_bin

    def install(self, resolved: str, *, token: CancelToken) -> None:
        token.raise_if_cancelled()
        ref = resolved.removeprefix("runx:")
        cmd = [self.runx_bin, "install", ref]
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except FileNotFoundError as e:
            raise PkgboxError(f"Could not find `{self.runx_bin}` to install {resolved}") from e
        token.raise_if_cancelled()
        if proc.returncode != 0:
            raise DownstreamToolError(tuple(cmd), proc.returncode, proc.stderr or "")
