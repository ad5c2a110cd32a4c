from ._version import __version__
from .installer import CorruptedDirectoryError, DepsyncError, NpmInstaller, RegistryProbe
from .npm_dir import NpmDirectoryManager, ReconcileResult, Status
from .portability import check_filename_compatibility, dependencies_are_portable
from .tempdirs import TempDirTracker
from .tree import DependencyNode, LockEntry, LockTree, canonical_version, compute_install_set, minimize_tree

__all__ = [
    "__version__",
    "CorruptedDirectoryError",
    "DependencyNode",
    "DepsyncError",
    "LockEntry",
    "LockTree",
    "NpmDirectoryManager",
    "NpmInstaller",
    "ReconcileResult",
    "RegistryProbe",
    "Status",
    "TempDirTracker",
    "canonical_version",
    "check_filename_compatibility",
    "compute_install_set",
    "dependencies_are_portable",
    "minimize_tree",
]
