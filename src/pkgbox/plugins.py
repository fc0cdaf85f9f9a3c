from __future__ import annotations

import json
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ValidationError
from .packages import PackageRef

logger = logging.getLogger(__name__)

VIRTENV_PATH = Path(".pkgbox") / "virtenv"


@dataclass(frozen=True)
class Plugin:
    name: str
    readme: str = ""
    create_files: dict[str, str] = field(default_factory=dict)


def load_plugins(plugin_dir: Path) -> dict[str, Plugin]:
    """Reads `<name>.json` plugin definitions from `plugin_dir`."""
    plugins: dict[str, Plugin] = {}
    if not plugin_dir.is_dir():
        return plugins
    for path in sorted(plugin_dir.glob("*.json")):
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.debug("skipping unreadable plugin %s", path)
            continue
        if not isinstance(raw, dict):
            continue
        name = raw.get("name") if isinstance(raw.get("name"), str) else path.stem
        files = raw.get("create_files")
        plugins[name] = Plugin(
            name=name,
            readme=raw.get("readme") if isinstance(raw.get("readme"), str) else "",
            create_files={k: v for k, v in files.items() if isinstance(k, str) and isinstance(v, str)}
            if isinstance(files, dict)
            else {},
        )
    return plugins


class PluginManager:
    def __init__(self, *, project_dir: Path, plugins: dict[str, Plugin] | None = None) -> None:
        self.project_dir = project_dir
        self.virtenv = project_dir / VIRTENV_PATH
        self.plugins = dict(plugins or {})

    def _plugin_for(self, pkg: PackageRef) -> Plugin | None:
        if pkg.disable_plugin:
            return None
        return self.plugins.get(pkg.canonical_name)

    def create(self, pkg: PackageRef) -> None:
        plugin = self._plugin_for(pkg)
        if plugin is None:
            return
        root = self.virtenv / plugin.name
        root.mkdir(parents=True, exist_ok=True)
        for rel, content in sorted(plugin.create_files.items()):
            target = (root / rel).resolve()
            if not target.is_relative_to(root.resolve()):
                raise ValidationError(f"Plugin {plugin.name} file escapes its directory: {rel}")
            if target.exists():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    def remove(self, names: list[str]) -> None:
        for name in names:
            plugin_dir = self.virtenv / PackageRef(name).canonical_name
            if plugin_dir.is_dir():
                logger.debug("removing plugin directory %s", plugin_dir)
                shutil.rmtree(plugin_dir)

    def remove_invalid_symlinks(self) -> None:
        if not self.virtenv.is_dir():
            return
        for path in sorted(self.virtenv.rglob("*")):
            if path.is_symlink() and not path.exists():
                logger.debug("removing dangling symlink %s", path)
                path.unlink()

    def readme(self, pkg: PackageRef) -> str | None:
        plugin = self._plugin_for(pkg)
        if plugin is None or not plugin.readme:
            return None
        return f"{pkg.canonical_name} NOTES:\n{plugin.readme.rstrip()}\n"
