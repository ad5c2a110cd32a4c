from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import DEFAULT_REGISTRY_URL, registry_prefix

_URL_WITH_SHA_RE = re.compile(r"^https?://.*[0-9a-f]{40}")


@dataclass(frozen=True)
class DependencyNode:
    """One entry of the tree reported by `npm ls --json`."""

    name: str
    version: str | None = None
    resolved: str | None = None
    from_spec: str | None = None
    dependencies: dict[str, DependencyNode] = field(default_factory=dict)
    missing: bool = False


@dataclass(frozen=True)
class LockEntry:
    version: str
    dependencies: dict[str, LockEntry] | None = None


@dataclass(frozen=True)
class LockTree:
    dependencies: dict[str, LockEntry] = field(default_factory=dict)


def is_url_with_sha(value: str | None) -> bool:
    return isinstance(value, str) and _URL_WITH_SHA_RE.match(value) is not None


def _opt_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_installed_tree(raw: Any, *, name: str = "") -> DependencyNode:
    """
    Boundary adapter for `npm ls --json --all` output.

    Only the fields that can influence a canonical version are kept; npm adds
    and reorders everything else between releases.
    """
    if not isinstance(raw, dict):
        return DependencyNode(name=name, missing=True)

    deps: dict[str, DependencyNode] = {}
    deps_raw = raw.get("dependencies")
    if isinstance(deps_raw, dict):
        for dep_name, dep_raw in deps_raw.items():
            if not isinstance(dep_name, str):
                continue
            deps[dep_name] = parse_installed_tree(dep_raw, name=dep_name)

    return DependencyNode(
        name=_opt_str(raw.get("name")) or name,
        version=_opt_str(raw.get("version")),
        resolved=_opt_str(raw.get("resolved")),
        from_spec=_opt_str(raw.get("from")),
        dependencies=deps,
        missing=bool(raw.get("missing")),
    )


def canonical_version(node: DependencyNode | None, *, registry_url: str = DEFAULT_REGISTRY_URL) -> str | None:
    """
    The identifier that matches what users put in their dependency manifest.

    Precedence: a resolved location outside the default registry, then a
    content-addressed URL the package was requested from, then the plain version.
    """
    if node is None or node.missing:
        return None
    if node.resolved and not node.resolved.startswith(registry_prefix(registry_url)):
        return node.resolved
    if is_url_with_sha(node.from_spec):
        return node.from_spec
    return node.version


def installed_dependencies(tree: DependencyNode, *, registry_url: str = DEFAULT_REGISTRY_URL) -> dict[str, str]:
    out: dict[str, str] = {}
    for name, node in tree.dependencies.items():
        version = canonical_version(node, registry_url=registry_url)
        if version is not None:
            out[name] = version
    return out


def compute_install_set(
    dependencies: dict[str, str],
    installed_tree: DependencyNode,
    *,
    registry_url: str = DEFAULT_REGISTRY_URL,
) -> list[str]:
    installed = installed_dependencies(installed_tree, registry_url=registry_url)
    args: list[str] = []
    for name in sorted(dependencies):
        spec = dependencies[name]
        if installed.get(name) == spec:
            continue
        args.append(spec if is_url_with_sha(spec) else f"{name}@{spec}")
    return args


def _minimize_node(node: DependencyNode, *, registry_url: str) -> LockEntry | None:
    version = canonical_version(node, registry_url=registry_url)
    if version is None:
        return None
    children = _minimize_children(node.dependencies, registry_url=registry_url)
    return LockEntry(version=version, dependencies=children or None)


def _minimize_children(deps: dict[str, DependencyNode], *, registry_url: str) -> dict[str, LockEntry]:
    out: dict[str, LockEntry] = {}
    for name in sorted(deps):
        entry = _minimize_node(deps[name], registry_url=registry_url)
        # npm reports unmet optional/peer deps as "missing" with no version.
        if entry is not None:
            out[name] = entry
    return out


def minimize_tree(tree: DependencyNode, *, registry_url: str = DEFAULT_REGISTRY_URL) -> LockTree:
    return LockTree(dependencies=_minimize_children(tree.dependencies, registry_url=registry_url))


def _entry_to_obj(entry: LockEntry) -> dict[str, Any]:
    obj: dict[str, Any] = {"version": entry.version}
    if entry.dependencies:
        obj["dependencies"] = {name: _entry_to_obj(entry.dependencies[name]) for name in sorted(entry.dependencies)}
    return obj


def lock_tree_to_obj(lock: LockTree) -> dict[str, Any]:
    return {"dependencies": {name: _entry_to_obj(lock.dependencies[name]) for name in sorted(lock.dependencies)}}


def dump_lock_tree(lock: LockTree) -> str:
    # Same layout `npm shrinkwrap` writes, with keys pinned for stable diffs.
    return json.dumps(lock_tree_to_obj(lock), indent=2, sort_keys=True) + "\n"


def _parse_entry(raw: Any, *, name: str) -> LockEntry:
    if not isinstance(raw, dict) or not isinstance(raw.get("version"), str):
        raise ValueError(f"Invalid lock entry for {name!r}")
    deps = _parse_entries(raw.get("dependencies"))
    return LockEntry(version=raw["version"], dependencies=deps or None)


def _parse_entries(raw: Any) -> dict[str, LockEntry]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError("Lock dependencies must be an object")
    return {name: _parse_entry(value, name=name) for name, value in raw.items()}


def parse_lock_tree(raw: Any) -> LockTree:
    if not isinstance(raw, dict):
        raise ValueError("Lock file must contain a JSON object")
    return LockTree(dependencies=_parse_entries(raw.get("dependencies")))


def read_lock_tree(path: Path) -> LockTree:
    return parse_lock_tree(json.loads(path.read_text(encoding="utf-8")))


def _entry_to_node(name: str, entry: LockEntry) -> DependencyNode:
    children = entry.dependencies or {}
    return DependencyNode(
        name=name,
        version=entry.version,
        dependencies={k: _entry_to_node(k, v) for k, v in children.items()},
    )


def lock_tree_to_node(lock: LockTree, *, name: str = "") -> DependencyNode:
    """Expand a lock tree back into the installed-tree shape."""
    return DependencyNode(
        name=name,
        dependencies={k: _entry_to_node(k, v) for k, v in lock.dependencies.items()},
    )
