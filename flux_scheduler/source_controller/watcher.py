"""Source watcher producing snapshots of a declarative source tree.

Each poll fetches the source, applies the include/exclude filter and reads
the remaining files into an immutable Snapshot. A snapshot is only published
when its content differs from the previous one so that downstream graph
rebuilds happen only on real changes.
"""

from abc import ABC, abstractmethod
import asyncio
import logging
import os
from pathlib import Path

from flux_scheduler.exceptions import SourceEmpty, SourceUnavailable
from flux_scheduler.manifest import SourceFilter

from .artifact import SourceArtifact
from .git import GitRef, fetch_git, local_revision
from .snapshot import Snapshot, compute_digest

__all__ = [
    "Source",
    "LocalSource",
    "GitSource",
    "SourceWatcher",
]

_LOGGER = logging.getLogger(__name__)

IGNORE_DIRS = {".git"}


class Source(ABC):
    """A location that declarative manifests are fetched from."""

    @abstractmethod
    async def fetch(self) -> SourceArtifact:
        """Fetch the source and return the local tree.

        Raises:
            SourceUnavailable: If the source can't be fetched.
        """


class LocalSource(Source):
    """A directory on the local filesystem, optionally inside a git repository."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path).expanduser().resolve()

    async def fetch(self) -> SourceArtifact:
        if not self._path.is_dir():
            raise SourceUnavailable(f"Source path is not a directory: {self._path}")
        revision = await asyncio.to_thread(local_revision, self._path)
        return SourceArtifact(local_path=str(self._path), revision=revision)

    def __str__(self) -> str:
        return str(self._path)


class GitSource(Source):
    """A remote git repository checked out at a ref."""

    def __init__(self, url: str, ref: GitRef | None = None) -> None:
        self._url = url
        self._ref = ref or GitRef()

    async def fetch(self) -> SourceArtifact:
        return await fetch_git(self._url, self._ref)

    def __str__(self) -> str:
        return self._url


def _read_tree(root: Path, source_filter: SourceFilter) -> dict[str, bytes]:
    """Read all files below root that pass the filter."""
    files: dict[str, bytes] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORE_DIRS)
        for filename in filenames:
            full_path = Path(dirpath) / filename
            rel_path = full_path.relative_to(root).as_posix()
            if not source_filter.matches(rel_path):
                continue
            try:
                files[rel_path] = full_path.read_bytes()
            except OSError as err:
                raise SourceUnavailable(
                    f"Failed to read file {full_path}: {err}"
                ) from err
    return files


class SourceWatcher:
    """Polls a source and publishes a new Snapshot when its content changes."""

    def __init__(
        self, source: Source, source_filter: SourceFilter | None = None
    ) -> None:
        """Initialize the SourceWatcher.

        Args:
            source: The source to poll.
            source_filter: Include/exclude rules applied to the source paths.
        """
        self._source = source
        self._filter = source_filter or SourceFilter()
        self._pending_filter: SourceFilter | None = None
        self._last: Snapshot | None = None

    @property
    def source(self) -> Source:
        """Return the polled source."""
        return self._source

    @property
    def last_snapshot(self) -> Snapshot | None:
        """Return the most recently published snapshot."""
        return self._last

    @property
    def source_filter(self) -> SourceFilter:
        """Return the filter used by the most recent poll."""
        return self._filter

    def set_filter(self, source_filter: SourceFilter) -> None:
        """Replace the filter, effective from the next poll.

        Snapshots already published are not affected.
        """
        self._pending_filter = source_filter

    async def poll(self) -> Snapshot | None:
        """Fetch the source and return a new Snapshot if the content changed.

        Returns:
            The new Snapshot, or None if the content is the same as the last
            published snapshot.

        Raises:
            SourceUnavailable: If the source could not be fetched.
            SourceEmpty: If no paths matched the filter.
        """
        if self._pending_filter is not None:
            _LOGGER.info("Applying new source filter %s", self._pending_filter)
            self._filter = self._pending_filter
            self._pending_filter = None

        artifact = await self._source.fetch()
        root = Path(artifact.local_path)
        files = await asyncio.to_thread(_read_tree, root, self._filter)
        if not files:
            raise SourceEmpty(
                f"No paths in {self._source} matched filter {self._filter}"
            )

        digest = compute_digest(files)
        if self._last is not None and self._last.digest == digest:
            _LOGGER.debug(
                "Source %s unchanged at %s", self._source, self._last.revision
            )
            return None

        snapshot = Snapshot(
            revision=artifact.revision or f"sha256:{digest}",
            files=files,
            digest=digest,
        )
        _LOGGER.info(
            "Source %s has new snapshot %s (%d files)",
            self._source,
            snapshot.revision,
            len(files),
        )
        self._last = snapshot
        return snapshot

