"""Immutable snapshots of a source tree."""

from collections.abc import Mapping
from dataclasses import dataclass, field
import hashlib
import logging
from pathlib import Path
from types import MappingProxyType

_LOGGER = logging.getLogger(__name__)


def compute_digest(files: Mapping[str, bytes]) -> str:
    """Return a content hash over the paths and contents of the files."""
    digest = hashlib.sha256()
    for path in sorted(files):
        digest.update(path.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(files[path]).digest())
    return digest.hexdigest()


def _under(path: str, prefix: str) -> bool:
    return not prefix or path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True, kw_only=True)
class Snapshot:
    """An immutable, versioned view of the filtered source tree.

    A snapshot is created on each poll that observed different content and is
    superseded, never mutated, by the next one.
    """

    revision: str
    """Identifier of the source version e.g. `main@sha1:<sha>` or `sha256:<digest>`."""

    files: Mapping[str, bytes] = field(repr=False, compare=False)
    """File contents keyed by posix path relative to the source root."""

    digest: str = ""
    """Content hash over all files, computed when not provided."""

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", MappingProxyType(dict(self.files)))
        if not self.digest:
            object.__setattr__(self, "digest", compute_digest(self.files))

    @property
    def paths(self) -> list[str]:
        """Return the sorted paths in the snapshot."""
        return sorted(self.files)

    def read(self, path: str) -> bytes:
        """Return the contents of a file in the snapshot."""
        return self.files[path]

    def list_dir(self, prefix: str) -> list[str]:
        """Return the sorted paths at or below the directory prefix."""
        prefix = prefix.strip("/")
        return [path for path in self.paths if _under(path, prefix)]

    def digest_for(self, prefix: str) -> str:
        """Return the content hash of the files below a directory prefix."""
        prefix = prefix.strip("/")
        return compute_digest(
            {path: data for path, data in self.files.items() if _under(path, prefix)}
        )

    def checkout(self, directory: Path) -> Path:
        """Write the snapshot files below the directory and return it."""
        for path, data in self.files.items():
            target = directory / path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        _LOGGER.debug(
            "Checked out %s (%d files) to %s", self.revision, len(self.files), directory
        )
        return directory
