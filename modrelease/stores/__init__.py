from .local_dir import LocalDirReleaseStore
from .memory import InMemoryReleaseStore

__all__ = ["InMemoryReleaseStore", "LocalDirReleaseStore"]
