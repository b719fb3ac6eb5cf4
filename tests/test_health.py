"""Tests for the health evaluator."""

from typing import Any

import pytest

from flux_scheduler.cluster import InMemoryCluster
from flux_scheduler.config import HealthConfig
from flux_scheduler.exceptions import HealthCheckTimeout, KubectlException
from flux_scheduler.health import (
    HealthEvaluator,
    HealthStatus,
    evaluate,
    evaluate_resource,
)
from flux_scheduler.manifest import NamedResource, resource_id

from .testlib import configmap, deployment


def with_status(obj: dict[str, Any], status: Any, **metadata: Any) -> dict[str, Any]:
    obj = {**obj, "status": status}
    obj["metadata"] = {**obj["metadata"], **metadata}
    return obj


def condition(condition_type: str, status: str) -> dict[str, Any]:
    return {"type": condition_type, "status": status}


DEPLOYMENT_READY = {
    "replicas": 1,
    "updatedReplicas": 1,
    "availableReplicas": 1,
    "readyReplicas": 1,
    "conditions": [condition("Available", "True")],
}


@pytest.mark.parametrize(
    ("obj", "expected"),
    [
        (None, HealthStatus.NOT_READY),
        (configmap("a"), HealthStatus.READY),
        (with_status(configmap("a"), "invalid"), HealthStatus.UNKNOWN),
        (
            with_status(configmap("a"), {}, deletionTimestamp="2024-01-01T00:00:00Z"),
            HealthStatus.NOT_READY,
        ),
        (deployment("web"), HealthStatus.NOT_READY),
        (with_status(deployment("web"), DEPLOYMENT_READY), HealthStatus.READY),
        (
            with_status(deployment("web"), {**DEPLOYMENT_READY, "readyReplicas": 0}),
            HealthStatus.NOT_READY,
        ),
        (
            with_status(deployment("web"), {**DEPLOYMENT_READY, "replicas": 2}),
            HealthStatus.NOT_READY,
        ),
        (
            with_status(
                deployment("web"),
                {**DEPLOYMENT_READY, "observedGeneration": 1},
                generation=2,
            ),
            HealthStatus.NOT_READY,
        ),
        (
            with_status(
                {"kind": "StatefulSet", "metadata": {"name": "db"}, "spec": {}},
                {"readyReplicas": 1, "currentRevision": "a", "updateRevision": "a"},
            ),
            HealthStatus.READY,
        ),
        (
            with_status(
                {"kind": "StatefulSet", "metadata": {"name": "db"}, "spec": {}},
                {"readyReplicas": 1, "currentRevision": "a", "updateRevision": "b"},
            ),
            HealthStatus.NOT_READY,
        ),
        (
            with_status(
                {"kind": "DaemonSet", "metadata": {"name": "agent"}},
                {
                    "desiredNumberScheduled": 3,
                    "updatedNumberScheduled": 3,
                    "numberReady": 3,
                },
            ),
            HealthStatus.READY,
        ),
        (
            with_status(
                {"kind": "Job", "metadata": {"name": "migrate"}},
                {"conditions": [condition("Complete", "True")]},
            ),
            HealthStatus.READY,
        ),
        (
            with_status(
                {"kind": "Job", "metadata": {"name": "migrate"}},
                {"conditions": [condition("Failed", "True")]},
            ),
            HealthStatus.NOT_READY,
        ),
        (
            with_status(
                {"kind": "PersistentVolumeClaim", "metadata": {"name": "data"}},
                {"phase": "Bound"},
            ),
            HealthStatus.READY,
        ),
        (
            with_status(
                {"kind": "Pod", "metadata": {"name": "web"}},
                {"phase": "Running", "conditions": [condition("Ready", "False")]},
            ),
            HealthStatus.NOT_READY,
        ),
        (
            with_status(
                {"kind": "HelmRelease", "metadata": {"name": "podinfo"}},
                {"conditions": [condition("Ready", "True")]},
            ),
            HealthStatus.READY,
        ),
        (
            with_status(
                {"kind": "HelmRelease", "metadata": {"name": "podinfo"}},
                {"conditions": [condition("Ready", "Unknown")]},
            ),
            HealthStatus.UNKNOWN,
        ),
        (
            with_status(
                {"kind": "Certificate", "metadata": {"name": "tls"}},
                {"conditions": [condition("Issuing", "True")]},
            ),
            HealthStatus.UNKNOWN,
        ),
    ],
)
def test_evaluate_resource(obj: dict[str, Any] | None, expected: HealthStatus) -> None:
    """Test readiness rules of individual objects."""
    assert evaluate_resource(obj) == expected


def test_evaluate_aggregate() -> None:
    """Test a unit is only ready when every object is ready."""
    ready = configmap("a")
    unknown = with_status(configmap("b"), "invalid")
    assert evaluate([]) == HealthStatus.READY
    assert evaluate([ready, ready]) == HealthStatus.READY
    assert evaluate([ready, unknown]) == HealthStatus.UNKNOWN
    assert evaluate([unknown, None, ready]) == HealthStatus.NOT_READY


async def test_wait_ready(cluster: InMemoryCluster, health: HealthEvaluator) -> None:
    """Test waiting until a controller reports the object ready."""
    await cluster.apply([deployment("web"), configmap("web")])
    inventory = [resource_id(deployment("web")), resource_id(configmap("web"))]

    status, pending = await health.check(inventory)
    assert status == HealthStatus.NOT_READY
    assert pending == [resource_id(deployment("web"))]

    cluster.set_status(resource_id(deployment("web")), DEPLOYMENT_READY)
    await health.wait_ready("web", inventory, timeout=1.0)
    assert await health.check(inventory) == (HealthStatus.READY, [])


async def test_wait_ready_timeout(
    cluster: InMemoryCluster, health: HealthEvaluator
) -> None:
    """Test a timeout names the resources that are not ready."""
    await cluster.apply([deployment("web")])
    with pytest.raises(HealthCheckTimeout, match="Deployment/default/web"):
        await health.wait_ready("web", [resource_id(deployment("web"))], timeout=0.05)


async def test_wait_ready_missing_object(health: HealthEvaluator) -> None:
    """Test a resource that does not exist is never ready."""
    with pytest.raises(HealthCheckTimeout, match="NotReady"):
        await health.wait_ready(
            "web", [NamedResource("ConfigMap", "default", "web")], timeout=0.02
        )


async def test_assume_ready(cluster: InMemoryCluster) -> None:
    """Test a dry run evaluator does not wait on controllers."""
    evaluator = HealthEvaluator(cluster, assume_ready=True)
    await evaluator.wait_ready("web", [resource_id(deployment("web"))], timeout=0)


class ErrorCluster(InMemoryCluster):
    """A cluster where reading objects fails."""

    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        raise KubectlException("connection refused")


async def test_cluster_error_is_unknown() -> None:
    """Test an error reading an object is reported as Unknown."""
    evaluator = HealthEvaluator(ErrorCluster(), HealthConfig(poll_interval=0.01))
    rid = NamedResource("ConfigMap", "default", "web")
    assert await evaluator.check([rid]) == (HealthStatus.UNKNOWN, [rid])
