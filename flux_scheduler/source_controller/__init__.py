"""The source controller module.

This module fetches the declarative source tree (a local directory or a git
repository) and publishes immutable Snapshots filtered by path rules.
"""

from .artifact import SourceArtifact
from .git import GitRef
from .snapshot import Snapshot
from .watcher import GitSource, LocalSource, Source, SourceWatcher

__all__ = [
    "GitRef",
    "GitSource",
    "LocalSource",
    "Snapshot",
    "Source",
    "SourceArtifact",
    "SourceWatcher",
]
