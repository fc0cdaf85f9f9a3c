from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_SEARCH_URL = "https://search.devbox.sh"
DEFAULT_CACHE_URL = "https://cache.nixos.org"
DEFAULT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class Config:
    search_url: str = DEFAULT_SEARCH_URL
    cache_url: str = DEFAULT_CACHE_URL
    timeout_s: float = DEFAULT_TIMEOUT_S
    nix_bin: str = "nix"
    runx_bin: str = "runx"


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("PKGBOX_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("pkgbox") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    write_json_atomic(path, asdict(cfg))
    return path


def merge_env(base: Config) -> Config:
    # Env overrides the config file; CLI flags are applied on top by the caller.
    timeout_raw = os.getenv("PKGBOX_TIMEOUT_S")
    timeout_s = base.timeout_s
    if timeout_raw:
        try:
            timeout_s = float(timeout_raw)
        except ValueError:
            timeout_s = base.timeout_s
    return Config(
        search_url=os.getenv("PKGBOX_SEARCH_URL") or base.search_url,
        cache_url=os.getenv("PKGBOX_CACHE_URL") or base.cache_url,
        timeout_s=timeout_s,
        nix_bin=os.getenv("PKGBOX_NIX_BIN") or base.nix_bin,
        runx_bin=base.runx_bin,
    )


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
