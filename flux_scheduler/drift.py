"""Drift detection and correction for units that were applied.

Every unit that has been Ready at least once is periodically compared with
the live cluster. Each object of the last applied render must exist and its
declared fields must match the live object; fields only set by the cluster
(such as `status` or defaulted fields) are ignored. On drift the unit is
re-applied through the scheduler, skipping the dependency gate since its
dependencies were satisfied when it first became Ready.
"""

import asyncio
import dataclasses
import logging
from typing import Any

from .cluster import Cluster
from .decrypt import is_encrypted
from .exceptions import CommandException
from .graph import Graph
from .manifest import NamedResource, Unit, resource_id
from .scheduler import Scheduler
from .source_controller import Snapshot
from .store import RenderArtifact, Store
from .task import TaskService, get_task_service

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "DriftReconciler",
    "is_subset",
]

IGNORED_FIELDS = ("status",)


def is_subset(desired: Any, live: Any) -> bool:
    """Return True if every field of desired has the same value in live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(
            key in live and is_subset(value, live[key])
            for key, value in desired.items()
        )
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(item, other) for item, other in zip(desired, live))
    return bool(desired == live)


class DriftReconciler:
    """Runs a drift check loop per unit at the unit's interval."""

    def __init__(
        self,
        store: Store,
        scheduler: Scheduler,
        cluster: Cluster,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize the DriftReconciler."""
        self._store = store
        self._scheduler = scheduler
        self._cluster = cluster
        self._task_service = task_service or get_task_service()
        self._tasks: dict[str, asyncio.Task[None]] = {}

    async def diff(self, artifact: RenderArtifact) -> list[NamedResource]:
        """Return the objects of the render that drifted from the live state."""
        drifted = []
        for obj in artifact.manifests:
            rid = resource_id(obj)
            live = await self._cluster.get(rid)
            if live is None:
                _LOGGER.debug("Object %s is missing", rid)
                drifted.append(rid)
                continue
            if is_encrypted(obj):
                # Only the decrypted payload was applied
                continue
            desired = {k: v for k, v in obj.items() if k not in IGNORED_FIELDS}
            if not is_subset(desired, live):
                _LOGGER.debug("Object %s differs from the last applied render", rid)
                drifted.append(rid)
        return drifted

    async def check(self, unit: Unit, snapshot: Snapshot) -> bool:
        """Re-apply the unit if its live objects drifted.

        Returns:
            True if drift was found and the unit was re-applied.
        """
        record = self._store.get_record(unit.name)
        if record is None or not record.ever_ready:
            _LOGGER.debug(
                "Unit %s has never been Ready, skipping drift check", unit.name
            )
            return False
        if unit.suspend:
            return False
        if self._store.unit_lock(unit.name).locked():
            _LOGGER.debug(
                "Unit %s has an apply in flight, skipping drift check", unit.name
            )
            return False
        if (artifact := self._store.get_artifact(unit.name)) is None:
            _LOGGER.debug(
                "Unit %s has no applied render, skipping drift check", unit.name
            )
            return False
        try:
            drifted = await self.diff(artifact)
        except CommandException as err:
            _LOGGER.error("Drift check of unit %s failed: %s", unit.name, err)
            return False
        if not drifted:
            _LOGGER.debug("Unit %s has no drift", unit.name)
            return False
        _LOGGER.info(
            "Unit %s drifted (%s), re-applying",
            unit.name,
            ", ".join(str(rid) for rid in drifted),
        )
        record = await self._scheduler.apply_unit(unit, snapshot)
        _LOGGER.info("Unit %s drift correction finished: %s", unit.name, record)
        return True

    def reset(self, name: str) -> None:
        """Stop drift correction of a unit until it is Ready again."""
        if (record := self._store.get_record(name)) is None:
            raise KeyError(f"Unit {name} has no record")
        self._store.set_record(name, dataclasses.replace(record, ever_ready=False))

    async def _loop(self, unit: Unit, snapshot: Snapshot) -> None:
        while True:
            await asyncio.sleep(unit.interval)
            try:
                await self.check(unit, snapshot)
            except Exception as err:
                _LOGGER.error(
                    "Unexpected error in drift check of unit %s: %s",
                    unit.name,
                    err,
                    exc_info=True,
                )

    def start(self, graph: Graph) -> None:
        """Replace the drift loops with one loop per unit of the graph."""
        for task in self._tasks.values():
            task.cancel()
        self._tasks = {
            name: self._task_service.create_background_task(
                self._loop(unit, graph.snapshot), name=f"drift {name}"
            )
            for name, unit in graph.units.items()
            if not unit.suspend and unit.interval > 0
        }
        _LOGGER.debug("Started %d drift loops", len(self._tasks))

    async def close(self) -> None:
        """Stop all drift loops."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
