"""Interface to the cluster that units are applied to."""

from abc import ABC, abstractmethod
from typing import Any

from flux_scheduler.manifest import NamedResource


class Cluster(ABC):
    """The live state of a cluster.

    The scheduler treats objects as opaque beyond their identity: rendered
    objects are passed to `apply` as is and live objects are returned as
    plain dictionaries including their `status`.
    """

    @abstractmethod
    async def apply(self, objects: list[dict[str, Any]]) -> None:
        """Create or update the objects in the cluster.

        Raises:
            CommandException: If the objects could not be applied.
        """

    @abstractmethod
    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return the live object, or None if it does not exist."""

    @abstractmethod
    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the object from the cluster if it exists."""
