"""Artifact representation."""

from dataclasses import dataclass


@dataclass(frozen=True, kw_only=True)
class SourceArtifact:
    """The result of fetching a source.

    The local path references a directory holding the fetched tree. Its
    contents are read into a Snapshot immediately, since the directory may be
    updated in place by the next fetch.
    """

    local_path: str
    """Local filesystem path to the fetched tree."""

    revision: str | None = None
    """Version of the tree e.g. `main@sha1:<sha>`, if the source knows one."""

    url: str | None = None
    """URL of the source, for informational/logging purposes."""
