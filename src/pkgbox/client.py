from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from .cancel import CancelToken
from .config import DEFAULT_SEARCH_URL, DEFAULT_TIMEOUT_S
from .errors import PkgboxError
from .packages import sort_versions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHTTPError(PkgboxError):
    status_code: int
    body: str

    def __str__(self) -> str:
        return f"Search service HTTP {self.status_code}: {self.body}"


@dataclass(frozen=True)
class Output:
    name: str
    path: str
    default: bool = False


@dataclass(frozen=True)
class SystemInfo:
    attr_path: str
    outputs: tuple[Output, ...] = ()


@dataclass(frozen=True)
class PackageVersion:
    name: str
    version: str
    commit_hash: str
    attr_path: str
    systems: dict[str, SystemInfo]


class SearchService(Protocol):
    def resolve(self, name: str, version: str, *, token: CancelToken) -> PackageVersion | None:
        ...

    def versions(self, name: str, *, token: CancelToken) -> list[str]:
        ...


def _parse_outputs(raw: Any) -> tuple[Output, ...]:
    outputs: list[Output] = []
    for item in raw if isinstance(raw, list) else []:
        if not isinstance(item, dict) or not isinstance(item.get("path"), str):
            continue
        outputs.append(
            Output(
                name=str(item.get("name") or "out"),
                path=item["path"],
                default=bool(item.get("default", False)),
            )
        )
    return tuple(outputs)


def parse_package_version(obj: Any) -> PackageVersion | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("name")
    version = obj.get("version")
    commit = obj.get("commit_hash")
    if not all(isinstance(v, str) and v.strip() for v in (name, version, commit)):
        return None
    attr_path = obj.get("attr_path") if isinstance(obj.get("attr_path"), str) else name
    systems: dict[str, SystemInfo] = {}
    raw_systems = obj.get("systems")
    if isinstance(raw_systems, dict):
        for system, info in raw_systems.items():
            if not isinstance(system, str) or not isinstance(info, dict):
                continue
            sys_attr = info.get("attr_path") if isinstance(info.get("attr_path"), str) else attr_path
            systems[system] = SystemInfo(attr_path=sys_attr, outputs=_parse_outputs(info.get("outputs")))
    return PackageVersion(
        name=name.strip(),
        version=version.strip(),
        commit_hash=commit.strip(),
        attr_path=attr_path.strip(),
        systems=systems,
    )


class SearchClient:
    """HTTP client for the package search service."""

    def __init__(self, *, base_url: str = DEFAULT_SEARCH_URL, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)
        self._resolve_cache: dict[tuple[str, str], PackageVersion | None] = {}
        self._versions_cache: dict[str, list[str]] = {}

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "SearchClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _get_json(self, path: str, params: dict[str, Any], *, token: CancelToken) -> Any:
        token.raise_if_cancelled()
        url = f"{self.base_url}{path}"
        try:
            resp = self._http.get(url, params=params)
        except httpx.HTTPError as e:
            raise PkgboxError(f"Request to search service failed: {e}") from e
        if resp.status_code >= 400:
            raise SearchHTTPError(resp.status_code, resp.text)
        return resp.json()

    def resolve(self, name: str, version: str, *, token: CancelToken) -> PackageVersion | None:
        key = (name, version)
        if key in self._resolve_cache:
            return self._resolve_cache[key]
        logger.debug("resolving %s@%s", name, version)
        try:
            data = self._get_json("/v2/resolve", {"name": name, "version": version}, token=token)
        except SearchHTTPError as e:
            if e.status_code != 404:
                raise
            data = None
        pkg = parse_package_version(data)
        self._resolve_cache[key] = pkg
        return pkg

    def versions(self, name: str, *, token: CancelToken) -> list[str]:
        if name in self._versions_cache:
            return list(self._versions_cache[name])
        try:
            data = self._get_json("/v1/search", {"q": name}, token=token)
        except SearchHTTPError as e:
            if e.status_code != 404:
                raise
            data = {}
        found: list[str] = []
        results = data.get("results") if isinstance(data, dict) else None
        for result in results if isinstance(results, list) else []:
            if not isinstance(result, dict) or result.get("name") != name:
                continue
            for item in result.get("packages") or []:
                if isinstance(item, dict) and isinstance(item.get("version"), str):
                    found.append(item["version"])
        versions = sort_versions(found)
        self._versions_cache[name] = versions
        return list(versions)
