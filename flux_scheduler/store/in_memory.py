"""Module for in memory Apply Record store."""

import asyncio
import dataclasses
from collections import defaultdict
from collections.abc import Callable
import logging
from typing import Any, DefaultDict

from .artifact import RenderArtifact
from .status import ApplyRecord, Status
from .store import Store, StoreEvent


_LOGGER = logging.getLogger(__name__)


class InMemoryStore(Store):
    """In-memory implementation of the Store interface.

    Stores Apply Records and render artifacts keyed by unit name and supports
    event listeners for record and artifact changes.
    """

    def __init__(self, records: dict[str, ApplyRecord] | None = None) -> None:
        """Initialize the InMemoryStore, optionally from previously saved records."""
        self._records: dict[str, ApplyRecord] = dict(records or {})
        self._artifacts: dict[str, RenderArtifact] = {}
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: DefaultDict[StoreEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    def get_record(self, name: str) -> ApplyRecord | None:
        """Retrieve the Apply Record of a unit."""
        return self._records.get(name)

    def set_record(self, name: str, record: ApplyRecord) -> None:
        """Replace the Apply Record of a unit."""
        if record.status == Status.FAILED:
            _LOGGER.error(
                "Unit %s status %s with error: %s", name, record.status, record.error
            )
        else:
            _LOGGER.debug("Updating record for unit %s to %s", name, record)
        self._records[name] = record
        self._fire_event(StoreEvent.RECORD_UPDATED, name, record)

    def update_status(
        self, name: str, status: Status, error: str | None = None, **changes: Any
    ) -> ApplyRecord:
        """Publish a new record for the unit with the status and any other changes."""
        current = self._records.get(name) or ApplyRecord()
        record = dataclasses.replace(current, status=status, error=error, **changes)
        self.set_record(name, record)
        return record

    def remove_record(self, name: str) -> None:
        """Remove the record and artifact of a unit that no longer exists."""
        _LOGGER.debug("Removing unit %s from store", name)
        self._records.pop(name, None)
        self._artifacts.pop(name, None)
        self._fire_event(StoreEvent.RECORD_REMOVED, name, None)

    def list_records(self) -> dict[str, ApplyRecord]:
        """Return a copy of all records keyed by unit name."""
        return dict(self._records)

    def set_artifact(self, name: str, artifact: RenderArtifact) -> None:
        """Store the last applied render of a unit."""
        if not isinstance(artifact, RenderArtifact):
            raise ValueError(
                f"Artifact/set {name} is not of type {RenderArtifact.__name__} (was {artifact.__class__.__name__})"
            )
        self._artifacts[name] = artifact
        self._fire_event(StoreEvent.ARTIFACT_UPDATED, name, artifact)

    def get_artifact(self, name: str) -> RenderArtifact | None:
        """Retrieve the last applied render of a unit."""
        return self._artifacts.get(name)

    def unit_lock(self, name: str) -> asyncio.Lock:
        """Return the lock that must be held while applying the unit."""
        return self._locks[name]

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[str, ApplyRecord | RenderArtifact | None], None],
    ) -> Callable[[], None]:
        """Register a callback for a specific event."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_ready(self, name: str) -> ApplyRecord:
        """Wait for the specified unit to become READY."""
        record = self._records.get(name)
        if record is not None and record.status == Status.READY:
            return record

        ready: asyncio.Future[ApplyRecord] = asyncio.get_running_loop().create_future()

        def callback(updated_name: str, updated: Any) -> None:
            if (
                updated_name == name
                and isinstance(updated, ApplyRecord)
                and updated.status == Status.READY
                and not ready.done()
            ):
                ready.set_result(updated)

        remove_listener = self.add_listener(StoreEvent.RECORD_UPDATED, callback)
        try:
            return await ready
        except asyncio.CancelledError:
            _LOGGER.debug("watch_ready for %s cancelled.", name)
            raise
        finally:
            remove_listener()
