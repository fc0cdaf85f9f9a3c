from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from .lockfile import LockedPackage

FLAKE_DIR = Path(".pkgbox") / "gen" / "flake"


@dataclass(frozen=True)
class FlakeInput:
    name: str
    url: str


def _input_name(url: str) -> str:
    return "in_" + hashlib.sha256(url.encode("utf-8")).hexdigest()[:10]


def _attr_expr(url: str, attr: str, system: str) -> str:
    if not attr:
        return f"packages.{system}.default"
    if attr.startswith(("legacyPackages.", "packages.")):
        return attr
    if url.startswith("github:NixOS/nixpkgs"):
        return f"legacyPackages.{system}.{attr}"
    return f"packages.{system}.{attr}"


def render_flake(locked: list[LockedPackage], *, system: str, nixpkgs_url: str) -> str:
    inputs: dict[str, FlakeInput] = {"nixpkgs": FlakeInput("nixpkgs", nixpkgs_url)}
    build_inputs: list[str] = []
    for item in locked:
        url, _, attr = item.resolved.partition("#")
        name = _input_name(url)
        inputs.setdefault(url, FlakeInput(name, url))
        build_inputs.append(f"inputs.{inputs[url].name}.{_attr_expr(url, attr, system)}")

    lines = [
        "{",
        '  description = "Generated by pkgbox. Do not edit.";',
        "  inputs = {",
    ]
    for inp in inputs.values():
        lines.append(f'    {inp.name}.url = "{inp.url}";')
    lines += [
        "  };",
        "  outputs = { self, ... }@inputs: {",
        f"    devShells.{system}.default = inputs.nixpkgs.legacyPackages.{system}.mkShell {{",
        "      buildInputs = [",
    ]
    lines += [f"        ({expr})" for expr in build_inputs]
    lines += ["      ];", "    };", "  };", "}", ""]
    return "\n".join(lines)


def generate_for_print_env(
    project_dir: Path,
    locked: list[LockedPackage],
    *,
    system: str,
    nixpkgs_url: str,
) -> Path:
    flake_dir = project_dir / FLAKE_DIR
    flake_dir.mkdir(parents=True, exist_ok=True)
    content = render_flake(locked, system=system, nixpkgs_url=nixpkgs_url)
    path = flake_dir / "flake.nix"
    if not path.exists() or path.read_text(encoding="utf-8") != content:
        path.write_text(content, encoding="utf-8")
    return flake_dir
