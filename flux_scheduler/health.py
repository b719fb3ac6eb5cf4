"""Health evaluation of the live resources of a unit.

Readiness follows the rules of the kubernetes `kstatus` library closely: an
object whose controller has not observed the latest generation is not
ready, built-in workload kinds compare their replica counts and everything
else is judged by its `Ready` or `Available` condition.
"""

import asyncio
from collections.abc import Iterable
from enum import StrEnum
import logging
from typing import Any

from .cluster import Cluster
from .config import HealthConfig
from .context import trace_context
from .exceptions import CommandException, HealthCheckTimeout
from .manifest import NamedResource

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "HealthStatus",
    "HealthEvaluator",
    "evaluate_resource",
    "evaluate",
]


class HealthStatus(StrEnum):
    """Readiness of a resource or a whole unit."""

    READY = "Ready"
    NOT_READY = "NotReady"
    UNKNOWN = "Unknown"


def _condition_status(condition: dict[str, Any]) -> HealthStatus:
    match condition.get("status"):
        case "True":
            return HealthStatus.READY
        case "False":
            return HealthStatus.NOT_READY
    return HealthStatus.UNKNOWN


def _conditions(status: dict[str, Any]) -> dict[str, dict[str, Any]]:
    return {
        cond["type"]: cond
        for cond in status.get("conditions") or ()
        if isinstance(cond, dict) and "type" in cond
    }


def _is_true(status: dict[str, Any], condition_type: str) -> bool:
    cond = _conditions(status).get(condition_type)
    return cond is not None and cond.get("status") == "True"


def _deployment(spec: dict[str, Any], status: dict[str, Any]) -> HealthStatus:
    replicas = spec.get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    if updated < replicas:
        return HealthStatus.NOT_READY
    if status.get("replicas", 0) > updated:
        # Old replicas are still terminating
        return HealthStatus.NOT_READY
    if status.get("availableReplicas", 0) < replicas:
        return HealthStatus.NOT_READY
    if status.get("readyReplicas", 0) < replicas:
        return HealthStatus.NOT_READY
    if (cond := _conditions(status).get("Available")) is not None:
        return _condition_status(cond)
    return HealthStatus.READY


def _statefulset(spec: dict[str, Any], status: dict[str, Any]) -> HealthStatus:
    replicas = spec.get("replicas", 1)
    if status.get("readyReplicas", 0) < replicas:
        return HealthStatus.NOT_READY
    if status.get("currentRevision") != status.get("updateRevision"):
        return HealthStatus.NOT_READY
    return HealthStatus.READY


def _daemonset(spec: dict[str, Any], status: dict[str, Any]) -> HealthStatus:
    if (desired := status.get("desiredNumberScheduled")) is None:
        return HealthStatus.NOT_READY
    if status.get("updatedNumberScheduled", 0) < desired:
        return HealthStatus.NOT_READY
    if status.get("numberReady", 0) < desired:
        return HealthStatus.NOT_READY
    return HealthStatus.READY


def _job(spec: dict[str, Any], status: dict[str, Any]) -> HealthStatus:
    if _is_true(status, "Complete"):
        return HealthStatus.READY
    return HealthStatus.NOT_READY


def _pvc(spec: dict[str, Any], status: dict[str, Any]) -> HealthStatus:
    if status.get("phase") == "Bound":
        return HealthStatus.READY
    return HealthStatus.NOT_READY


def _pod(spec: dict[str, Any], status: dict[str, Any]) -> HealthStatus:
    if status.get("phase") == "Succeeded" or _is_true(status, "Ready"):
        return HealthStatus.READY
    return HealthStatus.NOT_READY


KIND_RULES = {
    "Deployment": _deployment,
    "StatefulSet": _statefulset,
    "DaemonSet": _daemonset,
    "Job": _job,
    "PersistentVolumeClaim": _pvc,
    "Pod": _pod,
}

GENERIC_CONDITIONS = ("Ready", "Available")


def evaluate_resource(obj: dict[str, Any] | None) -> HealthStatus:
    """Return the readiness of a single live object.

    A missing object is not ready.
    """
    if obj is None:
        return HealthStatus.NOT_READY
    metadata = obj.get("metadata") or {}
    if metadata.get("deletionTimestamp"):
        return HealthStatus.NOT_READY
    status = obj.get("status")
    if status is not None and not isinstance(status, dict):
        return HealthStatus.UNKNOWN
    if (
        status
        and (observed := status.get("observedGeneration")) is not None
        and (generation := metadata.get("generation")) is not None
        and observed < generation
    ):
        return HealthStatus.NOT_READY

    if (rule := KIND_RULES.get(obj.get("kind", ""))) is not None:
        return rule(obj.get("spec") or {}, status or {})

    if not status:
        return HealthStatus.READY
    conditions = _conditions(status)
    for condition_type in GENERIC_CONDITIONS:
        if (cond := conditions.get(condition_type)) is not None:
            return _condition_status(cond)
    if conditions:
        return HealthStatus.UNKNOWN
    return HealthStatus.READY


def _aggregate(statuses: Iterable[HealthStatus]) -> HealthStatus:
    result = HealthStatus.READY
    for status in statuses:
        match status:
            case HealthStatus.NOT_READY:
                return HealthStatus.NOT_READY
            case HealthStatus.UNKNOWN:
                result = HealthStatus.UNKNOWN
    return result


def evaluate(resources: Iterable[dict[str, Any] | None]) -> HealthStatus:
    """Return the readiness of a whole unit from its live objects.

    The unit is ready only when every object is ready and is not ready as
    soon as any object is not ready.
    """
    return _aggregate(evaluate_resource(obj) for obj in resources)


class HealthEvaluator:
    """Evaluates the readiness of applied units against the live cluster."""

    def __init__(
        self,
        cluster: Cluster,
        config: HealthConfig | None = None,
        assume_ready: bool = False,
    ) -> None:
        """Initialize the HealthEvaluator.

        Args:
            cluster: The cluster to read live objects from.
            config: Polling configuration.
            assume_ready: Treat every unit as ready after apply, used for dry
                runs against a cluster without controllers.
        """
        self._cluster = cluster
        self._config = config or HealthConfig()
        self._assume_ready = assume_ready

    def evaluate(self, resources: Iterable[dict[str, Any] | None]) -> HealthStatus:
        """Return the readiness of a unit from its live objects."""
        return evaluate(resources)

    async def _evaluate(self, resource_id: NamedResource) -> HealthStatus:
        try:
            obj = await self._cluster.get(resource_id)
        except CommandException as err:
            _LOGGER.debug("Unable to get %s: %s", resource_id, err)
            return HealthStatus.UNKNOWN
        return evaluate_resource(obj)

    async def check(
        self, inventory: list[NamedResource]
    ) -> tuple[HealthStatus, list[NamedResource]]:
        """Evaluate the inventory once.

        Returns:
            The unit readiness and the resources that are not yet ready.
        """
        statuses = await asyncio.gather(*(self._evaluate(rid) for rid in inventory))
        pending = [
            rid
            for rid, status in zip(inventory, statuses)
            if status != HealthStatus.READY
        ]
        return _aggregate(statuses), pending

    async def wait_ready(
        self, unit: str, inventory: list[NamedResource], timeout: float
    ) -> None:
        """Poll the cluster until every resource in the inventory is ready.

        Raises:
            HealthCheckTimeout: If the resources are not ready within the timeout.
        """
        if self._assume_ready:
            _LOGGER.debug("Assuming unit %s is ready", unit)
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        with trace_context(f"health {unit}"):
            while True:
                status, pending = await self.check(inventory)
                if status == HealthStatus.READY:
                    _LOGGER.debug("Unit %s resources are ready", unit)
                    return
                remaining = deadline - loop.time()
                if remaining <= 0:
                    names = ", ".join(str(rid) for rid in pending[:5])
                    raise HealthCheckTimeout(unit, f"{status} resources: {names}")
                _LOGGER.debug(
                    "Unit %s is %s waiting on %d resources", unit, status, len(pending)
                )
                await asyncio.sleep(min(self._config.poll_interval, remaining))
