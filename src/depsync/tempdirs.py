from __future__ import annotations

import secrets
import shutil
from pathlib import Path

import structlog

from .installer import CorruptedDirectoryError

log = structlog.get_logger("depsync.tempdirs")


def random_token() -> str:
    return secrets.token_hex(8)


class TempDirTracker:
    """
    Remembers scratch directories so an interrupted run does not leave them behind.

    Use as a context manager around one or more reconciliations; whatever is
    still registered on exit (normal return, exception, Ctrl-C) is removed.
    """

    def __init__(self) -> None:
        self._paths: list[Path] = []

    def __enter__(self) -> "TempDirTracker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    @property
    def paths(self) -> tuple[Path, ...]:
        return tuple(self._paths)

    def sibling(self, path: Path, label: str) -> Path:
        tmp = path.with_name(f"{path.name}-{label}-{random_token()}")
        self.track(tmp)
        return tmp

    def track(self, path: Path) -> None:
        if path not in self._paths:
            self._paths.append(path)

    def release(self, path: Path) -> None:
        if path.exists():
            shutil.rmtree(path)
        self.forget(path)

    def forget(self, path: Path) -> None:
        if path in self._paths:
            self._paths.remove(path)

    def cleanup(self) -> None:
        for path in list(self._paths):
            try:
                if path.exists():
                    shutil.rmtree(path)
            except OSError as e:
                log.warning("tempdirs.cleanup_failed", path=str(path), error=str(e))
                continue
            self.forget(path)


def remove_directory(path: Path, tracker: TempDirTracker) -> bool:
    """
    Delete `path` without it ever being visible half-deleted under its real name.

    Returns False when there was nothing to delete. Anything other than a
    directory at `path` is left alone and reported as corruption.
    """
    if path.exists() and not path.is_dir():
        raise CorruptedDirectoryError(f"Corrupted .npm directory -- should be a directory: {path}")
    tmp = tracker.sibling(path, "temp")
    try:
        path.rename(tmp)
    except FileNotFoundError:
        tracker.forget(tmp)
        return False
    tracker.release(tmp)
    return True
