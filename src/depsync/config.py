from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import structlog
from platformdirs import user_config_path

log = structlog.get_logger("depsync.config")

DEFAULT_REGISTRY_URL = "https://registry.npmjs.org/"
DEFAULT_TIMEOUT_S = 30.0

# Config field -> environment variable that overrides it.
ENV_OVERRIDES = {
    "npm_path": "DEPSYNC_NPM_PATH",
    "node_path": "DEPSYNC_NODE_PATH",
    "registry_url": "DEPSYNC_REGISTRY_URL",
    "timeout_s": "DEPSYNC_TIMEOUT_S",
}


@dataclass(frozen=True)
class Config:
    npm_path: str | None = None  # default: "npm" on PATH
    node_path: str | None = None  # default: "node" on PATH
    registry_url: str = DEFAULT_REGISTRY_URL
    compatibility_version: str | None = None  # e.g. "v18.17.*"; normally derived from `node --version`
    timeout_s: float = DEFAULT_TIMEOUT_S  # registry probe only
    print_npm_calls: bool = False


def registry_prefix(registry_url: str) -> str:
    return registry_url.rstrip("/") + "/"


def _coerce(name: str, value: Any) -> Any:
    """Return `value` as the type field `name` expects, or raise ValueError."""
    if name == "timeout_s":
        if isinstance(value, bool):
            raise ValueError("expected a number")
        timeout = float(value)
        if timeout <= 0:
            raise ValueError("must be positive")
        return timeout
    if name == "print_npm_calls":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in {"true", "false"}:
            return value.lower() == "true"
        raise ValueError("expected true or false")
    if name == "registry_url":
        if not isinstance(value, str) or not value.startswith(("http://", "https://")):
            raise ValueError("expected an http(s) URL")
        return registry_prefix(value)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError("expected a string")
    return value or None


def _apply(cfg: Config, values: Mapping[str, Any], *, source: str) -> Config:
    changes: dict[str, Any] = {}
    for name, value in values.items():
        try:
            changes[name] = _coerce(name, value)
        except (TypeError, ValueError) as e:
            log.warning("config.invalid_value", source=source, field=name, value=value, error=str(e))
    return replace(cfg, **changes)


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("DEPSYNC_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path("depsync") / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    """
    Read the config file, keeping only known fields with usable values.

    A missing or non-object file yields the defaults. Bad values are logged and
    left at their defaults rather than failing every command.
    """
    path = config_path(path_override)
    if not path.exists():
        return Config()

    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return Config()

    known = {f.name for f in fields(Config)}
    return _apply(Config(), {k: v for k, v in raw.items() if k in known}, source=str(path))


def with_env_overrides(cfg: Config, environ: Mapping[str, str] | None = None) -> Config:
    env = os.environ if environ is None else environ
    values = {name: env[var] for name, var in ENV_OVERRIDES.items() if env.get(var)}
    return _apply(cfg, values, source="environment")


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path
