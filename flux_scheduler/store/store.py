"""Store module for holding the reconciliation state of units."""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import Callable
from enum import Enum

from .artifact import RenderArtifact
from .status import ApplyRecord, Status


class StoreEvent(str, Enum):
    """Enum for store events."""

    RECORD_UPDATED = "record_updated"
    RECORD_REMOVED = "record_removed"
    ARTIFACT_UPDATED = "artifact_updated"


class Store(ABC):
    """Abstract base class for the Apply Record table with listener support.

    Records are read concurrently by any number of workers. Writers must hold
    the per-unit lock returned by `unit_lock` so that no two workers mutate the
    same unit at once.
    """

    @abstractmethod
    def get_record(self, name: str) -> ApplyRecord | None:
        """Retrieve the Apply Record of a unit."""

    @abstractmethod
    def set_record(self, name: str, record: ApplyRecord) -> None:
        """Replace the Apply Record of a unit."""

    @abstractmethod
    def update_status(
        self, name: str, status: Status, error: str | None = None, **changes: object
    ) -> ApplyRecord:
        """Publish a new record for the unit with the status and any other changes."""

    @abstractmethod
    def remove_record(self, name: str) -> None:
        """Remove the record and artifact of a unit that no longer exists."""

    @abstractmethod
    def list_records(self) -> dict[str, ApplyRecord]:
        """Return a copy of all records keyed by unit name."""

    @abstractmethod
    def set_artifact(self, name: str, artifact: RenderArtifact) -> None:
        """Store the last applied render of a unit."""

    @abstractmethod
    def get_artifact(self, name: str) -> RenderArtifact | None:
        """Retrieve the last applied render of a unit."""

    @abstractmethod
    def unit_lock(self, name: str) -> asyncio.Lock:
        """Return the lock that must be held while applying the unit."""

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, ApplyRecord | RenderArtifact | None], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch_ready(self, name: str) -> ApplyRecord:
        """
        Wait for the specified unit to become READY.

        If the unit is already READY, returns its record immediately. A FAILED
        unit does not end the watch since the unit may still recover; callers
        are expected to handle timeouts or cancel the watch.

        Args:
            name: The name of the unit to watch.

        Returns:
            ApplyRecord of the unit when it becomes READY.

        Raises:
            asyncio.CancelledError: If the watch is cancelled.
        """
