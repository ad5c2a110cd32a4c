from __future__ import annotations

import json
import os
import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from .config import DEFAULT_REGISTRY_URL, DEFAULT_TIMEOUT_S
from .tree import DependencyNode, parse_installed_tree

log = structlog.get_logger("depsync.installer")


class DepsyncError(RuntimeError):
    pass


class CorruptedDirectoryError(DepsyncError):
    pass


class InstallerOutputError(DepsyncError):
    pass


@dataclass(frozen=True)
class CommandResult:
    success: bool
    stdout: str
    stderr: str
    error: str


@dataclass(frozen=True)
class ListResult:
    tree: DependencyNode | None
    error: str | None = None


_MISSING_PACKAGE_RE = re.compile(r"404\s+'(\S+?)' is not in (?:the npm|this) registry")
_BAD_VERSION_RE = re.compile(
    r"No (?:compatible|matching) version found(?: for)?:?\s+((?:@[^@\s/]+/)?[^@\s]+)@(\S+?)\.?(?:\s|$)"
)
_NODE_VERSION_RE = re.compile(r"^(v?\d+\.\d+)\.\d+")
# Newer npm quotes "name@version"; a leading "@" belongs to the scope.
_TRAILING_VERSION_RE = re.compile(r"(?<=.)@[^@/]*$")


def classify_install_failure(result: CommandResult) -> str:
    m = _MISSING_PACKAGE_RE.search(result.stderr)
    if m:
        name = _TRAILING_VERSION_RE.sub("", m.group(1))
        return f"there is no npm package named '{name}'"
    m = _BAD_VERSION_RE.search(result.stderr)
    if m:
        return f"{m.group(1)} version {m.group(2)} is not available in the npm registry"
    return result.error


def compatibility_version_from(node_version: str) -> str:
    """
    Collapse a full node version into the ABI-relevant part.

    "v18.17.1" -> "v18.17.*\\n". Native modules only need rebuilding when this
    value changes, not on every patch release.
    """
    raw = node_version.strip()
    m = _NODE_VERSION_RE.match(raw)
    if not m:
        raise ValueError(f"Unsupported node version: {node_version!r}")
    prefix = m.group(1)
    if not prefix.startswith("v"):
        prefix = "v" + prefix
    return f"{prefix}.*\n"


def _env_with_path(bin_dir: Path | None) -> dict[str, str]:
    env = dict(os.environ)
    if bin_dir is None:
        return env
    # npm build scripts call plain `node`; make sure ours wins over any global one.
    current = env.get("PATH", "")
    env["PATH"] = os.pathsep.join(p for p in (str(bin_dir), current) if p)
    return env


class NpmInstaller:
    """
    Runs npm/node as external processes.

    Nothing here retries or times out: the caller owns both.
    """

    def __init__(
        self,
        *,
        npm_path: str | None = None,
        node_path: str | None = None,
        compatibility_version: str | None = None,
        print_calls: bool = False,
    ) -> None:
        self.npm_path = npm_path or ("npm.cmd" if sys.platform == "win32" else "npm")
        self.node_path = node_path or "node"
        self._compatibility_override = compatibility_version
        self.print_calls = print_calls

    def _bin_dir(self) -> Path | None:
        if os.sep not in self.node_path and "/" not in self.node_path:
            return None
        return Path(self.node_path).expanduser().parent

    def _exec(self, argv: list[str], cwd: Path | None) -> CommandResult:
        if self.print_calls:
            log.info("npm.command", cwd=str(cwd) if cwd else None, argv=argv)
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                env=_env_with_path(self._bin_dir()),
                capture_output=True,
                text=True,
            )
        except OSError as e:
            log.debug("npm.command_unavailable", argv=argv, error=str(e))
            return CommandResult(success=False, stdout="", stderr="", error=f"Could not run {argv[0]}: {e}")

        success = proc.returncode == 0
        if self.print_calls:
            log.info("npm.command_done", argv=argv, success=success)
        error = proc.stderr
        if not success:
            error = f"Command failed with exit code {proc.returncode}: {' '.join(argv)}\n{proc.stderr}"
        return CommandResult(success=success, stdout=proc.stdout, stderr=proc.stderr, error=error)

    def run(self, args: list[str], cwd: Path) -> CommandResult:
        return self._exec([self.npm_path, *args], cwd)

    def list_installed(self, cwd: Path) -> ListResult:
        result = self.run(["ls", "--json", "--all"], cwd)
        try:
            raw = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            if not result.success:
                return ListResult(tree=None, error=f"couldn't read npm version lock information: {result.error}")
            raise InstallerOutputError(f"npm ls produced unparseable output in {cwd}") from e
        # npm ls exits non-zero for extraneous/missing packages but still prints the tree.
        return ListResult(tree=parse_installed_tree(raw))

    def compatibility_version(self) -> str | None:
        if self._compatibility_override:
            value = self._compatibility_override
            return value if value.endswith("\n") else value + "\n"
        result = self._exec([self.node_path, "--version"], None)
        if not result.success:
            return None
        try:
            return compatibility_version_from(result.stdout)
        except ValueError:
            return None


class RegistryProbe:
    def __init__(
        self,
        *,
        registry_url: str = DEFAULT_REGISTRY_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.Client | None = None,
    ) -> None:
        self.registry_url = registry_url
        self.timeout_s = timeout_s
        self._http = http

    def is_reachable(self) -> bool:
        http = self._http or httpx.Client(timeout=self.timeout_s, follow_redirects=True)
        try:
            http.get(self.registry_url)
        except httpx.HTTPError as e:
            log.warning("registry.unreachable", url=self.registry_url, error=str(e))
            return False
        finally:
            if self._http is None:
                http.close()
        return True
