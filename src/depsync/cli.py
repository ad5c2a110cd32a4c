from __future__ import annotations

import argparse
import json
import sys
import textwrap
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from ._version import __version__
from .config import Config, config_path, load_config, registry_prefix, save_config, with_env_overrides
from .installer import DepsyncError, NpmInstaller, RegistryProbe
from .logging_setup import setup_logging
from .npm_dir import NpmDirectoryManager, ReconcileResult
from .portability import dependencies_are_portable
from .tempdirs import TempDirTracker
from .tree import installed_dependencies


def _parse_kv(s: str) -> tuple[str, str]:
    if "=" not in s:
        raise DepsyncError(f"Expected name=version, got {s!r}")
    k, v = s.split("=", 1)
    k = k.strip()
    v = v.strip()
    if not k or not v:
        raise DepsyncError(f"Expected name=version, got {s!r}")
    return k, v


def _load_dependencies(args: argparse.Namespace) -> dict[str, str]:
    deps: dict[str, str] = {}
    if args.deps:
        path = Path(args.deps).expanduser()
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise DepsyncError(f"Could not read dependencies from {path}: {e}") from e
        # Accept a bare {name: version} map or a package.json-like object.
        if isinstance(raw, dict) and isinstance(raw.get("dependencies"), dict):
            raw = raw["dependencies"]
        if not isinstance(raw, dict) or not all(isinstance(k, str) and isinstance(v, str) for k, v in raw.items()):
            raise DepsyncError(f"{path} must contain an object mapping package names to versions.")
        deps.update(raw)
    for kv in args.dependency:
        k, v = _parse_kv(kv)
        deps[k] = v
    return deps


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = with_env_overrides(base)
    overrides = {
        name: getattr(args, name, None) for name in ("npm_path", "node_path", "registry_url", "timeout_s")
    }
    if overrides["registry_url"]:
        overrides["registry_url"] = registry_prefix(overrides["registry_url"])
    cfg = replace(cfg, **{k: v for k, v in overrides.items() if v is not None})
    if getattr(args, "print_npm_calls", False):
        cfg = replace(cfg, print_npm_calls=True)
    return cfg


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


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="depsync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Reconcile a package's .npm directory with its declared npm dependencies.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              DEPSYNC_NPM_PATH, DEPSYNC_NODE_PATH, DEPSYNC_REGISTRY_URL, DEPSYNC_TIMEOUT_S,
              DEPSYNC_CONFIG_PATH, DEPSYNC_LOG_LEVEL, DEPSYNC_LOG_FORMAT
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--npm-path", help="npm executable (default: npm on PATH)")
        parser.add_argument("--node-path", help="node executable (default: node on PATH)")
        parser.add_argument("--registry-url", help="Default npm registry URL")
        parser.add_argument("--timeout-s", type=float, help="Registry probe timeout in seconds")

    p.add_argument("--version", action="version", version=f"depsync {__version__}")
    p.add_argument("--log-level", help="Log level (default: DEPSYNC_LOG_LEVEL or INFO)")

    sub = p.add_subparsers(dest="cmd", required=True)

    update = sub.add_parser("update", help="Bring an .npm directory in line with the given dependencies")
    _add_runtime_overrides(update)
    update.add_argument("npm_dir", help="Path of the .npm directory")
    update.add_argument("dependency", nargs="*", help="Dependency as name=version (repeatable)")
    update.add_argument("--package", help="Owning package name (default: parent folder name)")
    update.add_argument("--deps", help="JSON file with a {name: version} map or a package.json")
    update.add_argument("--quiet", action="store_true", help="Do not log the dependency list")
    update.add_argument("--print-npm-calls", action="store_true", help="Log every npm invocation")
    update.add_argument("--json", action="store_true", help="Output JSON")

    portable = sub.add_parser("portable", help="Check node_modules for architecture-specific artifacts")
    portable.add_argument("npm_dir", help="Path of the .npm directory")
    portable.add_argument("--json", action="store_true", help="Output JSON")

    installed = sub.add_parser("installed", help="Show top-level installed dependencies")
    _add_runtime_overrides(installed)
    installed.add_argument("npm_dir", help="Path of the .npm directory")
    installed.add_argument("--json", action="store_true", help="Output JSON")

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")

    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--npm-path")
    cfg_set.add_argument("--node-path")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--compatibility-version", help='Pin the node ABI stamp, e.g. "v18.17.*"')
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--print-npm-calls", choices=["true", "false"])

    return p


def _installer_from_cfg(cfg: Config) -> NpmInstaller:
    return NpmInstaller(
        npm_path=cfg.npm_path,
        node_path=cfg.node_path,
        compatibility_version=cfg.compatibility_version,
        print_calls=cfg.print_npm_calls,
    )


def _result_payload(result: ReconcileResult) -> dict[str, Any]:
    return {
        "status": result.status.value,
        "npm_dir": str(result.npm_dir),
        "changed": result.changed,
        "created": result.created,
        "removed": result.removed,
        "lock_changed": result.lock_changed,
        "installed": list(result.installed),
        "warnings": list(result.warnings),
        "errors": list(result.errors),
    }


def cmd_update(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    npm_dir = Path(args.npm_dir).expanduser().resolve()
    package_name = args.package or npm_dir.parent.name
    dependencies = _load_dependencies(args)

    manager = NpmDirectoryManager(
        installer=_installer_from_cfg(cfg),
        probe=RegistryProbe(registry_url=cfg.registry_url, timeout_s=cfg.timeout_s),
        registry_url=cfg.registry_url,
    )
    with TempDirTracker() as tracker:
        result = manager.update_dependencies(package_name, npm_dir, dependencies, quiet=args.quiet, tracker=tracker)

    rc = 0 if result.ok else 1
    if args.json:
        print(json.dumps(_result_payload(result), indent=2, sort_keys=True))
        return rc

    print(f"npm_dir: {result.npm_dir}")
    _print_table(
        [
            ["FIELD", "VALUE"],
            ["status", result.status.value],
            ["changed", str(result.changed).lower()],
            ["installed", str(len(result.installed))],
        ]
    )
    for arg in result.installed:
        print(f"installed: {arg}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    for error in result.errors:
        print(f"error: {error}", file=sys.stderr)
    return rc


def cmd_portable(args: argparse.Namespace) -> int:
    npm_dir = Path(args.npm_dir).expanduser()
    if not npm_dir.is_dir():
        raise DepsyncError(f"Not a directory: {npm_dir}")
    portable = dependencies_are_portable(npm_dir)
    if args.json:
        print(json.dumps({"npm_dir": str(npm_dir), "portable": portable}, indent=2, sort_keys=True))
    else:
        print("portable" if portable else "not portable: native (.node) artifacts found")
    return 0 if portable else 1


def cmd_installed(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    npm_dir = Path(args.npm_dir).expanduser()
    listing = _installer_from_cfg(cfg).list_installed(npm_dir)
    if listing.error or listing.tree is None:
        raise DepsyncError(listing.error or f"Could not list installed packages in {npm_dir}")
    deps = installed_dependencies(listing.tree, registry_url=cfg.registry_url)

    if args.json:
        print(json.dumps(deps, indent=2, sort_keys=True))
        return 0
    rows = [["NAME", "VERSION"]]
    rows.extend([name, deps[name]] for name in sorted(deps))
    _print_table(rows)
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        print(json.dumps(asdict(cfg), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        print_npm_calls = cfg.print_npm_calls
        if args.print_npm_calls is not None:
            print_npm_calls = args.print_npm_calls == "true"
        new_cfg = Config(
            npm_path=args.npm_path if args.npm_path is not None else cfg.npm_path,
            node_path=args.node_path if args.node_path is not None else cfg.node_path,
            registry_url=registry_prefix(args.registry_url) if args.registry_url else cfg.registry_url,
            compatibility_version=(
                args.compatibility_version if args.compatibility_version is not None else cfg.compatibility_version
            ),
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            print_npm_calls=print_npm_calls,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        if args.cmd == "update":
            return cmd_update(args)
        if args.cmd == "portable":
            return cmd_portable(args)
        if args.cmd == "installed":
            return cmd_installed(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except DepsyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
