from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

import structlog

from .config import DEFAULT_REGISTRY_URL
from .installer import (
    CommandResult,
    CorruptedDirectoryError,
    InstallerOutputError,
    ListResult,
    classify_install_failure,
)
from .portability import NODE_MODULES, check_filename_compatibility
from .tempdirs import TempDirTracker, random_token, remove_directory
from .tree import compute_install_set, dump_lock_tree, minimize_tree

log = structlog.get_logger("depsync.npm_dir")

LOCK_FILENAME = "npm-shrinkwrap.json"
PACKAGE_JSON = "package.json"
NPM_LOCK_FILENAME = "package-lock.json"
HIDDEN_PACKAGE_JSON = ".package.json"
HIDDEN_LOCK_FILENAME = ".npm-shrinkwrap.json"
NODE_VERSION_FILENAME = ".node_version"
README_FILENAME = "README"
GITIGNORE_FILENAME = ".gitignore"

# Checked in to version control by users; avoid needless edits.
README_TEXT = (
    "This directory and the files immediately inside it are automatically generated\n"
    "when you change this package's npm dependencies. Commit the files in this\n"
    "directory (npm-shrinkwrap.json, .gitignore, and this README) to source control\n"
    "so that others run the same versions of sub-dependencies.\n"
    "\n"
    "You should NOT check in the node_modules directory that is created here\n"
    "automatically; if you are using git, the .gitignore file tells git to ignore it.\n"
)

UNREACHABLE_MESSAGE = "Can't install npm dependencies. Are you connected to the internet?"


class Installer(Protocol):
    def run(self, args: list[str], cwd: Path) -> CommandResult:
        ...

    def list_installed(self, cwd: Path) -> ListResult:
        ...

    def compatibility_version(self) -> str | None:
        ...


class ConnectivityProbe(Protocol):
    def is_reachable(self) -> bool:
        ...


class Status(str, Enum):
    SUCCESS = "success"
    NO_DEPENDENCIES = "no_dependencies"
    RECOVERABLE_FAILURE = "recoverable_failure"


@dataclass(frozen=True)
class ReconcileResult:
    status: Status
    npm_dir: Path
    installed: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    created: bool = False
    removed: bool = False
    lock_changed: bool = False

    @property
    def ok(self) -> bool:
        return self.status is not Status.RECOVERABLE_FAILURE

    @property
    def has_dependencies(self) -> bool:
        return self.status is Status.SUCCESS

    @property
    def changed(self) -> bool:
        return bool(self.installed) or self.created or self.removed or self.lock_changed


@dataclass(frozen=True)
class _Step:
    errors: tuple[str, ...] = ()
    installed: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    lock_text: str | None = None


def package_json_name(package_name: str) -> str:
    # Colons are legal in our package names but not in npm's.
    return "packages-for-" + package_name.replace(":", "_")


def _write_text_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)


class NpmDirectoryManager:
    """
    Keeps a package's `.npm` directory in line with its declared npm dependencies.

    All work happens in a staged copy next to the real directory; only a fully
    successful run is renamed into place, so a failed or interrupted run leaves
    the previous contents untouched.
    """

    def __init__(
        self,
        *,
        installer: Installer,
        probe: ConnectivityProbe,
        registry_url: str = DEFAULT_REGISTRY_URL,
    ) -> None:
        self.installer = installer
        self.probe = probe
        self.registry_url = registry_url

    def update_dependencies(
        self,
        package_name: str,
        npm_dir: Path,
        dependencies: dict[str, str] | None,
        *,
        quiet: bool = False,
        tracker: TempDirTracker | None = None,
    ) -> ReconcileResult:
        npm_dir = Path(npm_dir)
        if tracker is None:
            with TempDirTracker() as scoped:
                return self._update(package_name, npm_dir, dict(dependencies or {}), quiet=quiet, tracker=scoped)
        return self._update(package_name, npm_dir, dict(dependencies or {}), quiet=quiet, tracker=tracker)

    def _update(
        self,
        package_name: str,
        npm_dir: Path,
        dependencies: dict[str, str],
        *,
        quiet: bool,
        tracker: TempDirTracker,
    ) -> ReconcileResult:
        if not dependencies:
            # We used to have npm dependencies but don't any more.
            removed = remove_directory(npm_dir, tracker)
            if removed:
                log.info("npm_dir.removed", package=package_name, npm_dir=str(npm_dir))
            return ReconcileResult(status=Status.NO_DEPENDENCIES, npm_dir=npm_dir, removed=removed)

        if npm_dir.exists() and not npm_dir.is_dir():
            raise CorruptedDirectoryError(f"Corrupted .npm directory -- should be a directory: {npm_dir}")

        if npm_dir.exists() and not (npm_dir / LOCK_FILENAME).exists():
            log.warning("npm_dir.corrupted", package=package_name, npm_dir=str(npm_dir), missing=LOCK_FILENAME)
            remove_directory(npm_dir, tracker)

        compatibility = self.installer.compatibility_version()
        if compatibility is None:
            return self._failed(npm_dir, ["couldn't determine the current node version"])

        existed = npm_dir.exists()
        previous_lock = (npm_dir / LOCK_FILENAME).read_text(encoding="utf-8") if existed else None

        staging = tracker.sibling(npm_dir, "new")
        try:
            if existed:
                shutil.copytree(npm_dir, staging, symlinks=True)
                step = self._update_existing(package_name, staging, dependencies, compatibility)
            else:
                staging.mkdir(parents=True)
                if not quiet:
                    log.info("npm_dir.updating", package=package_name, dependencies=sorted(dependencies))
                step = self._create_fresh(package_name, staging, dependencies, compatibility)

            if step.errors:
                return self._failed(npm_dir, step.errors, warnings=step.warnings)

            self._swap_into_place(staging, npm_dir, tracker)
        finally:
            tracker.release(staging)

        return ReconcileResult(
            status=Status.SUCCESS,
            npm_dir=npm_dir,
            installed=step.installed,
            warnings=step.warnings,
            created=not existed,
            lock_changed=step.lock_text != previous_lock,
        )

    def _failed(
        self,
        npm_dir: Path,
        errors: list[str] | tuple[str, ...],
        *,
        warnings: tuple[str, ...] = (),
    ) -> ReconcileResult:
        for message in errors:
            log.error("npm_dir.update_failed", npm_dir=str(npm_dir), error=message)
        return ReconcileResult(
            status=Status.RECOVERABLE_FAILURE,
            npm_dir=npm_dir,
            warnings=warnings,
            errors=tuple(errors),
        )

    def _update_existing(
        self,
        package_name: str,
        staging: Path,
        dependencies: dict[str, str],
        compatibility: str,
    ) -> _Step:
        if not (staging / LOCK_FILENAME).exists():
            raise CorruptedDirectoryError(f"Corrupted .npm directory -- can't find {LOCK_FILENAME} in {staging}")

        node_modules = staging / NODE_MODULES
        if node_modules.exists():
            # Native modules must be rebuilt whenever the node ABI changes.
            marker = node_modules / NODE_VERSION_FILENAME
            stamped = marker.read_text(encoding="utf-8") if marker.exists() else None
            if stamped != compatibility:
                log.info(
                    "npm_dir.node_version_changed",
                    package=package_name,
                    stamped=stamped.strip() if stamped else None,
                    current=compatibility.strip(),
                )
                shutil.rmtree(node_modules)

        if node_modules.exists() and (
            not (node_modules / HIDDEN_PACKAGE_JSON).exists() or not (node_modules / HIDDEN_LOCK_FILENAME).exists()
        ):
            log.warning("npm_dir.node_modules_incomplete", package=package_name)
            shutil.rmtree(node_modules)

        node_modules_existed = node_modules.exists()

        install = self._install_modules(package_name, staging, dependencies)
        if install.errors:
            return install

        warnings: list[str] = []
        if node_modules_existed and install.installed:
            # Installing over an existing tree leaves extraneous and duplicated packages behind.
            # Useful to report, not worth failing over once install succeeded.
            for command in ("prune", "dedupe"):
                result = self.installer.run([command], staging)
                if not result.success:
                    log.warning("npm_dir.cleanup_failed", package=package_name, command=command, error=result.error)
                    warnings.append(f"npm {command} failed: {result.error}")

        return self._complete(staging, compatibility, install, warnings)

    def _create_fresh(
        self,
        package_name: str,
        staging: Path,
        dependencies: dict[str, str],
        compatibility: str,
    ) -> _Step:
        install = self._install_modules(package_name, staging, dependencies)
        if install.errors:
            return install
        return self._complete(staging, compatibility, install, [])

    def _install_modules(self, package_name: str, staging: Path, dependencies: dict[str, str]) -> _Step:
        # Without it npm may install into a node_modules higher up the tree.
        (staging / NODE_MODULES).mkdir(parents=True, exist_ok=True)
        self._write_package_json(package_name, staging, dependencies)

        listing = self.installer.list_installed(staging)
        if listing.error:
            return _Step(errors=(listing.error,))
        if listing.tree is None:
            raise InstallerOutputError(f"npm ls returned no dependency tree for {staging}")

        args = compute_install_set(dependencies, listing.tree, registry_url=self.registry_url)
        if not args:
            log.debug("npm_dir.up_to_date", package=package_name)
            return _Step()

        if not self.probe.is_reachable():
            return _Step(errors=(UNREACHABLE_MESSAGE,))

        result = self.installer.run(["install", *args], staging)
        if not result.success:
            return _Step(errors=(classify_install_failure(result),))

        bad_names = check_filename_compatibility(staging)
        if bad_names:
            return _Step(errors=(bad_names,))

        return _Step(installed=tuple(args))

    def _write_package_json(self, package_name: str, staging: Path, dependencies: dict[str, str]) -> None:
        payload = {
            # name and version are unimportant but required by `npm install`.
            "name": package_json_name(package_name),
            "version": "0.0.0",
            "dependencies": {k: dependencies[k] for k in sorted(dependencies)},
        }
        _write_text_atomic(staging / PACKAGE_JSON, json.dumps(payload, indent=2) + "\n")

    def _complete(self, staging: Path, compatibility: str, install: _Step, warnings: list[str]) -> _Step:
        listing = self.installer.list_installed(staging)
        if listing.error:
            return _Step(errors=(listing.error,), warnings=tuple(warnings))
        if listing.tree is None:
            raise InstallerOutputError(f"npm ls returned no dependency tree for {staging}")

        lock_text = dump_lock_tree(minimize_tree(listing.tree, registry_url=self.registry_url))
        lock_path = staging / LOCK_FILENAME
        _write_text_atomic(lock_path, lock_text)

        node_modules = staging / NODE_MODULES
        package_json = staging / PACKAGE_JSON
        if not package_json.exists():
            raise CorruptedDirectoryError(f"Expected {PACKAGE_JSON} in {staging}")
        package_json.replace(node_modules / HIDDEN_PACKAGE_JSON)
        shutil.copyfile(lock_path, node_modules / HIDDEN_LOCK_FILENAME)

        # npm-shrinkwrap.json is the only lock kept here.
        stray_lock = staging / NPM_LOCK_FILENAME
        if stray_lock.exists():
            stray_lock.unlink()

        _write_text_atomic(staging / README_FILENAME, README_TEXT)
        _write_text_atomic(node_modules / NODE_VERSION_FILENAME, compatibility)
        _write_text_atomic(staging / GITIGNORE_FILENAME, "node_modules\n")

        return _Step(installed=install.installed, warnings=tuple(warnings), lock_text=lock_text)

    def _swap_into_place(self, staging: Path, npm_dir: Path, tracker: TempDirTracker) -> None:
        old: Path | None = None
        if npm_dir.exists():
            # Not tracked until the new tree is in place: an interrupt between
            # the two renames must never delete the only good copy.
            old = npm_dir.with_name(f"{npm_dir.name}-old-{random_token()}")
            npm_dir.rename(old)
        try:
            staging.rename(npm_dir)
        except OSError:
            if old is not None:
                old.rename(npm_dir)
            raise
        tracker.forget(staging)
        if old is not None:
            tracker.track(old)
            tracker.release(old)
