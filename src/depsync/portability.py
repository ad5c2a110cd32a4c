from __future__ import annotations

import os
import sys
from pathlib import Path

NODE_MODULES = "node_modules"
NATIVE_EXTENSION = ".node"
MAX_REPORTED_PATHS = 10


def _contains_native_artifact(dir_path: Path) -> bool:
    with os.scandir(dir_path) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.name.endswith(NATIVE_EXTENSION):
            return True
        if entry.is_dir(follow_symlinks=False) and _contains_native_artifact(Path(entry.path)):
            return True
    return False


def dependencies_are_portable(npm_dir: Path) -> bool:
    """
    True when node_modules can be copied to another machine and still work.

    `.node` is the extension node loads as a shared object, so any such file
    means something was compiled for this architecture. A directory without
    node_modules (a fresh checkout) has nothing native in it.
    """
    node_modules = npm_dir / NODE_MODULES
    if not node_modules.is_dir():
        return True
    return not _contains_native_artifact(node_modules)


def find_paths_with_colons(root: Path) -> list[str]:
    if not root.is_dir():
        return []
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for name in [*dirnames, *sorted(filenames)]:
            rel = (base / name).relative_to(root).as_posix()
            if ":" in rel:
                found.append(rel)
    return sorted(found)


def check_filename_compatibility(npm_dir: Path, *, host_platform: str | None = None) -> str | None:
    """
    Returns an error message when node_modules would not survive on Windows.

    Only meaningful on a unix-like host; a Windows host could never have
    created such files.
    """
    platform = sys.platform if host_platform is None else host_platform
    if platform == "win32":
        return None

    paths = find_paths_with_colons(npm_dir / NODE_MODULES)
    if not paths:
        return None

    shown = paths[:MAX_REPORTED_PATHS]
    if len(paths) > MAX_REPORTED_PATHS:
        shown.append(f"... {len(paths) - MAX_REPORTED_PATHS} paths omitted.")
    return (
        "Some filenames in your package have invalid characters.\n"
        "The following file paths have colons, ':', which won't work on Windows:\n" + "\n".join(shown)
    )
