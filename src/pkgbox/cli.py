from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path

from ._version import __version__
from .cache import BinaryCacheValidator
from .cancel import CancelToken
from .client import SearchClient, SearchHTTPError
from .config import Config, config_path, load_config, merge_env, save_config
from .errors import PkgboxError
from .manifest import SUPPORTED_PLATFORMS
from .nix import Nix, RunxInstaller
from .project import AddOpts, Project


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = merge_env(base)
    return Config(
        search_url=getattr(args, "search_url", None) or cfg.search_url,
        cache_url=cfg.cache_url,
        timeout_s=getattr(args, "timeout_s", None) or cfg.timeout_s,
        nix_bin=cfg.nix_bin,
        runx_bin=cfg.runx_bin,
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pkgbox",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Declarative per-project Nix packages.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              PKGBOX_SEARCH_URL, PKGBOX_CACHE_URL, PKGBOX_TIMEOUT_S, PKGBOX_NIX_BIN, PKGBOX_CONFIG_PATH
            """
        ),
    )

    def _add_common(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--project", "-p", default=".", help="Project directory (default: current directory)")
        parser.add_argument("--search-url", help="Package search service URL")
        parser.add_argument("--timeout-s", type=float, help="HTTP timeout in seconds")
        parser.add_argument("--verbose-errors", action="store_true", help="Print the full cause chain on errors")

    p.add_argument("--version", action="version", version=f"pkgbox {__version__}")
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="cmd", required=True)

    add = sub.add_parser("add", help="Add packages to pkgbox.json and install them")
    _add_common(add)
    add.add_argument("packages", nargs="+", help="Packages to add, e.g. go@1.21 or nixpkgs#hello")
    add.add_argument(
        "--platform",
        action="append",
        default=[],
        choices=SUPPORTED_PLATFORMS,
        help="Only install on this platform (repeatable)",
    )
    add.add_argument(
        "--exclude-platform",
        action="append",
        default=[],
        choices=SUPPORTED_PLATFORMS,
        help="Never install on this platform (repeatable)",
    )
    add.add_argument("--disable-plugin", action="store_true", help="Disable the plugin for these packages")
    add.add_argument("--patch-glibc", action="store_true", help="Patch binaries to use a newer glibc")
    add.add_argument("--allow-insecure", action="store_true", help="Allow packages marked insecure")

    rm = sub.add_parser("rm", aliases=["remove"], help="Remove packages from pkgbox.json")
    _add_common(rm)
    rm.add_argument("packages", nargs="+")

    up = sub.add_parser("update", aliases=["up"], help="Re-resolve packages to their newest matching versions")
    _add_common(up)
    up.add_argument("packages", nargs="*")

    inst = sub.add_parser("install", aliases=["i"], help="Install everything declared in pkgbox.json")
    _add_common(inst)

    ls = sub.add_parser("list", aliases=["ls"], help="List declared packages")
    _add_common(ls)
    ls.add_argument("--json", action="store_true", help="Print JSON")

    cfg = sub.add_parser("config", help="Manage user config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--search-url")
    cfg_set.add_argument("--cache-url")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--nix-bin")
    cfg_set.add_argument("--runx-bin")

    return p


def _make_project(args: argparse.Namespace, cfg: Config, search: SearchClient) -> Project:
    nix = Nix(nix_bin=cfg.nix_bin)
    return Project(
        project_dir=Path(args.project),
        search=search,
        nix=nix,
        cache=BinaryCacheValidator(nix=nix, cache_url=cfg.cache_url, timeout_s=cfg.timeout_s),
        runx=RunxInstaller(runx_bin=cfg.runx_bin),
    )


def _cancel_on_sigint(token: CancelToken) -> None:
    def _handler(signum, frame) -> None:  # noqa: ARG001
        token.cancel()

    signal.signal(signal.SIGINT, _handler)


def cmd_add(args: argparse.Namespace, project: Project, token: CancelToken) -> int:
    opts = AddOpts(
        platforms=tuple(args.platform),
        exclude_platforms=tuple(args.exclude_platform),
        disable_plugin=args.disable_plugin,
        patch_glibc=args.patch_glibc,
        allow_insecure=args.allow_insecure,
    )
    project.add(args.packages, opts, token=token)
    return 0


def cmd_remove(args: argparse.Namespace, project: Project, token: CancelToken) -> int:
    removed = project.remove(*args.packages, token=token)
    for name in removed:
        print(f"removed: {name}")
    return 0


def cmd_update(args: argparse.Namespace, project: Project, token: CancelToken) -> int:
    result = project.update(args.packages, token=token)
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["updated", str(len(result.updated))],
            ["unchanged", str(len(result.unchanged))],
        ]
    )
    for name in result.updated:
        print(f"updated: {name}")
    return 0


def cmd_install(args: argparse.Namespace, project: Project, token: CancelToken) -> int:
    project.install(token=token)
    return 0


def cmd_list(args: argparse.Namespace, project: Project, token: CancelToken) -> int:
    rows = [["PACKAGE", "RESOLVED", "PLATFORMS"]]
    payload = []
    for pkg in project.manifest.packages:
        locked = project.lockfile.get(pkg.raw)
        resolved = locked.resolved if locked else ""
        platforms = ",".join(pkg.platforms) or "all"
        if pkg.excluded_platforms:
            platforms += " (excluding " + ",".join(pkg.excluded_platforms) + ")"
        rows.append([pkg.raw, resolved or "-", platforms])
        payload.append(
            {
                "name": pkg.raw,
                "resolved": resolved or None,
                "platforms": pkg.platforms,
                "excluded_platforms": pkg.excluded_platforms,
            }
        )
    if args.json:
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    _print_table(rows)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        print(json.dumps(asdict(load_config()), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            search_url=args.search_url or cfg.search_url,
            cache_url=args.cache_url or cfg.cache_url,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            nix_bin=args.nix_bin or cfg.nix_bin,
            runx_bin=args.runx_bin or cfg.runx_bin,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


_PROJECT_COMMANDS = {
    "add": cmd_add,
    "rm": cmd_remove,
    "remove": cmd_remove,
    "update": cmd_update,
    "up": cmd_update,
    "install": cmd_install,
    "i": cmd_install,
    "list": cmd_list,
    "ls": cmd_list,
}


def _run_project_command(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    token = CancelToken()
    _cancel_on_sigint(token)
    with SearchClient(base_url=cfg.search_url, timeout_s=cfg.timeout_s) as search:
        project = _make_project(args, cfg, search)
        try:
            return _PROJECT_COMMANDS[args.cmd](args, project, token)
        finally:
            project.cache.close()


def _print_error_details(err: BaseException) -> None:
    print("error_details:", file=sys.stderr)
    cause = err.__cause__ or err.__context__
    depth = 1
    while cause is not None:
        print(f"  cause[{depth}]: {type(cause).__name__}: {cause}", file=sys.stderr)
        cause = cause.__cause__ or cause.__context__
        depth += 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd in _PROJECT_COMMANDS:
            return _run_project_command(args)
        raise AssertionError("unreachable")
    except SearchHTTPError as e:
        print(f"error: search service returned HTTP {e.status_code}", file=sys.stderr)
        return 1
    except PkgboxError as e:
        print(f"error: {e}", file=sys.stderr)
        if getattr(args, "verbose_errors", False):
            _print_error_details(e)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
