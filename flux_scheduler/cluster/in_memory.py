"""Module for an in memory cluster, used for dry runs and tests."""

import copy
import logging
from typing import Any

from flux_scheduler.manifest import NamedResource, resource_id

from .cluster import Cluster

_LOGGER = logging.getLogger(__name__)


class InMemoryCluster(Cluster):
    """In-memory implementation of the Cluster interface.

    Applied objects are stored as given. The `status` of an existing object is
    preserved across applies, as the API server would, and can be set
    with `set_status` to simulate controllers making progress.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryCluster."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self.apply_count = 0

    @property
    def objects(self) -> dict[NamedResource, dict[str, Any]]:
        """Return a copy of all live objects keyed by identity."""
        return copy.deepcopy(self._objects)

    async def apply(self, objects: list[dict[str, Any]]) -> None:
        """Create or update the objects in the cluster."""
        self.apply_count += 1
        for obj in objects:
            rid = resource_id(obj)
            live = copy.deepcopy(obj)
            if (existing := self._objects.get(rid)) is not None:
                live.pop("status", None)
                if "status" in existing:
                    live["status"] = existing["status"]
            _LOGGER.debug("Applied %s", rid)
            self._objects[rid] = live

    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return the live object, or None if it does not exist."""
        if (obj := self._objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(obj)

    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the object from the cluster if it exists."""
        if self._objects.pop(resource_id, None) is not None:
            _LOGGER.debug("Deleted %s", resource_id)

    def set_status(self, resource_id: NamedResource, status: dict[str, Any]) -> None:
        """Replace the status of a live object."""
        if resource_id not in self._objects:
            raise KeyError(f"Object {resource_id} does not exist")
        self._objects[resource_id]["status"] = copy.deepcopy(status)

    def mutate(self, resource_id: NamedResource, obj: dict[str, Any]) -> None:
        """Replace a live object out of band, e.g. to simulate drift."""
        self._objects[resource_id] = copy.deepcopy(obj)
