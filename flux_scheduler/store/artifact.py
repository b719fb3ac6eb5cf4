"""Artifact representation."""

from dataclasses import dataclass, field
from typing import Any

from flux_scheduler.manifest import NamedResource, resource_id


@dataclass(frozen=True, kw_only=True)
class RenderArtifact:
    """The last successfully applied render of a unit.

    Used to compute the objects to prune on the next apply and as the desired
    state when checking for drift.
    """

    revision: str
    """Snapshot revision the render was produced from."""

    manifests: list[dict[str, Any]] = field(default_factory=list)
    """The rendered objects, as applied."""

    prune: bool = False
    """The prune flag of the unit definition that produced the render."""

    @property
    def inventory(self) -> list[NamedResource]:
        """Return the identities of the applied objects."""
        return [resource_id(obj) for obj in self.manifests]
