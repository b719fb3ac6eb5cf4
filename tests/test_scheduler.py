"""Tests for the dependency scheduler."""

import asyncio
from collections import defaultdict
from typing import Any

import pytest

from flux_scheduler.cluster import InMemoryCluster
from flux_scheduler.config import SchedulerConfig
from flux_scheduler.exceptions import KubectlException
from flux_scheduler.graph import GraphBuilder
from flux_scheduler.health import HealthEvaluator
from flux_scheduler.manifest import resource_id
from flux_scheduler.scheduler import Generation, Scheduler
from flux_scheduler.store import InMemoryStore, Status
from flux_scheduler.task import TaskServiceImpl

from .testlib import (
    UNITS_FILE,
    configmap,
    deployment,
    dump,
    make_graph,
    make_snapshot,
    unit_doc,
)

DEPLOYMENT_READY = {
    "replicas": 1,
    "updatedReplicas": 1,
    "availableReplicas": 1,
    "readyReplicas": 1,
}


class FailingCluster(InMemoryCluster):
    """A cluster that rejects objects with the configured names."""

    def __init__(
        self,
        fail: set[str],
        exc: Exception | None = None,
        failures: int | None = None,
    ) -> None:
        super().__init__()
        self.fail = fail
        self.exc = exc
        self.failures = failures
        self.rejected = 0

    async def apply(self, objects: list[dict[str, Any]]) -> None:
        for obj in objects:
            if obj["metadata"]["name"] in self.fail:
                self.rejected += 1
                if self.failures is not None and self.rejected >= self.failures:
                    # Recovers after the configured number of rejections
                    self.fail = set()
                raise self.exc or KubectlException("admission webhook denied")
        await super().apply(objects)


class SlowCluster(InMemoryCluster):
    """A cluster that tracks how many applies are in progress at once."""

    def __init__(self) -> None:
        super().__init__()
        self.active = 0
        self.max_active = 0
        self.active_by_name: dict[str, int] = defaultdict(int)
        self.max_active_by_name: dict[str, int] = defaultdict(int)

    async def apply(self, objects: list[dict[str, Any]]) -> None:
        names = [obj["metadata"]["name"] for obj in objects]
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        for name in names:
            self.active_by_name[name] += 1
            self.max_active_by_name[name] = max(
                self.max_active_by_name[name], self.active_by_name[name]
            )
        try:
            await asyncio.sleep(0.02)
            await super().apply(objects)
        finally:
            self.active -= 1
            for name in names:
                self.active_by_name[name] -= 1


def assert_no_unit_applying(store: InMemoryStore) -> None:
    for name, record in store.list_records().items():
        assert record.status != Status.APPLYING, name


async def wait_for_status(store: InMemoryStore, name: str, status: Status) -> None:
    async with asyncio.timeout(5):
        while (record := store.get_record(name)) is None or record.status != status:
            await asyncio.sleep(0.005)


def make_scheduler(
    cluster: InMemoryCluster,
    store: InMemoryStore,
    scheduler_config: SchedulerConfig,
    workers: int = 4,
) -> Scheduler:
    return Scheduler(
        store,
        cluster,
        HealthEvaluator(cluster),
        config=scheduler_config,
        task_service=TaskServiceImpl(workers),
    )


async def test_apply_in_dependency_order(
    scheduler: Scheduler, store: InMemoryStore, cluster: InMemoryCluster
) -> None:
    """Test every unit is applied only after its dependencies are Ready."""
    graph = make_graph(
        [
            unit_doc("apps", dependsOn=["infra-configs"]),
            unit_doc("infra-configs", dependsOn=["infra-controllers"]),
            unit_doc("infra-controllers"),
            unit_doc("monitoring", dependsOn=["infra-controllers"]),
        ]
    )
    result = await scheduler.run(graph)
    assert result.ok
    assert result.revision == "main@sha1:1"
    assert result.ready == ["apps", "infra-configs", "infra-controllers", "monitoring"]

    records = store.list_records()
    for name, unit in graph.units.items():
        record = records[name]
        assert record.status == Status.READY
        assert record.ever_ready
        assert record.revision == "main@sha1:1"
        assert record.retries == 0
        for dep in unit.depends_on:
            assert records[dep].ready_at <= record.apply_started_at
    assert resource_id(configmap("apps")) in cluster.objects
    assert_no_unit_applying(store)


async def test_wait_disabled(scheduler: Scheduler, store: InMemoryStore) -> None:
    """Test a unit without wait is Ready once the apply succeeds."""
    graph = make_graph(
        [unit_doc("web", wait=False)], objects={"web": [deployment("web")]}
    )
    result = await scheduler.run(graph)
    assert result.ready == ["web"]


async def test_health_check_timeout(scheduler: Scheduler, store: InMemoryStore) -> None:
    """Test a unit that never becomes healthy stalls at its timeout."""
    graph = make_graph(
        [unit_doc("web", timeout="100ms")], objects={"web": [deployment("web")]}
    )
    result = await scheduler.run(graph)
    assert result.failed == ["web"]
    assert not result.ok

    record = store.get_record("web")
    assert record is not None
    assert record.status == Status.FAILED
    assert record.stalled
    assert record.retries >= 1
    assert not record.ever_ready
    assert "health check timed out" in (record.error or "")
    assert_no_unit_applying(store)


async def test_becomes_healthy(
    scheduler: Scheduler, store: InMemoryStore, cluster: InMemoryCluster
) -> None:
    """Test a unit waits for its workloads before becoming Ready."""
    graph = make_graph(
        [unit_doc("web"), unit_doc("frontend", dependsOn=["web"])],
        objects={"web": [deployment("web")]},
    )
    run = asyncio.create_task(scheduler.run(graph))
    await wait_for_status(store, "web", Status.APPLYING)
    await asyncio.sleep(0.05)
    assert store.get_record("frontend").status == Status.PENDING

    cluster.set_status(resource_id(deployment("web")), DEPLOYMENT_READY)
    result = await run
    assert result.ready == ["frontend", "web"]


async def test_failure_blocks_dependents(
    store: InMemoryStore, scheduler_config: SchedulerConfig
) -> None:
    """Test a failing unit only holds back the units that depend on it."""
    cluster = FailingCluster({"broken"})
    scheduler = make_scheduler(cluster, store, scheduler_config)
    graph = make_graph(
        [
            unit_doc("infra"),
            unit_doc("broken", timeout="50ms"),
            unit_doc("apps", dependsOn=["broken"]),
            unit_doc("monitoring", dependsOn=["infra"]),
        ]
    )
    result = await scheduler.run(graph)
    assert result.ready == ["infra", "monitoring"]
    assert result.failed == ["broken"]
    assert result.blocked == ["apps"]
    assert not result.ok

    broken = store.get_record("broken")
    assert broken.status == Status.FAILED
    assert broken.stalled
    assert "admission webhook denied" in broken.error
    assert broken.retries > 1
    # Dependents are never failed themselves
    assert store.get_record("apps").status == Status.PENDING
    assert resource_id(configmap("apps")) not in cluster.objects

    # The next run retries the failed unit and unblocks its dependents
    cluster.fail.clear()
    result = await scheduler.run(graph)
    assert result.ok
    assert result.ready == ["apps", "broken"]
    assert result.skipped == ["infra", "monitoring"]
    assert not store.get_record("broken").stalled
    assert_no_unit_applying(store)


async def test_recover_within_timeout(
    store: InMemoryStore, scheduler_config: SchedulerConfig
) -> None:
    """Test a transient failure is retried until Ready within the same run."""
    cluster = FailingCluster({"infra"}, failures=2)
    scheduler = make_scheduler(cluster, store, scheduler_config)
    graph = make_graph([unit_doc("infra"), unit_doc("apps", dependsOn=["infra"])])
    result = await scheduler.run(graph)
    assert result.ok
    assert result.ready == ["apps", "infra"]
    assert result.failed == []
    assert cluster.rejected == 2

    infra = store.get_record("infra")
    assert infra.status == Status.READY
    assert infra.retries == 2
    assert not infra.stalled
    assert infra.ever_ready
    assert infra.error is None
    apps = store.get_record("apps")
    assert apps.status == Status.READY
    assert apps.apply_started_at >= infra.ready_at


async def test_unexpected_error(
    store: InMemoryStore, scheduler_config: SchedulerConfig
) -> None:
    """Test an unexpected error while applying fails the unit."""
    cluster = FailingCluster({"web"}, exc=RuntimeError("boom"))
    scheduler = make_scheduler(cluster, store, scheduler_config)
    graph = make_graph([unit_doc("web", timeout="20ms")])
    result = await scheduler.run(graph)
    assert result.failed == ["web"]
    assert "unexpected RuntimeError" in store.get_record("web").error


async def test_render_error(scheduler: Scheduler, store: InMemoryStore) -> None:
    """Test a unit whose source path has no manifests fails."""
    snapshot = make_snapshot({UNITS_FILE: dump(unit_doc("web", timeout="20ms"))})
    graph = GraphBuilder().build(snapshot)
    result = await scheduler.run(graph)
    assert result.failed == ["web"]
    record = store.get_record("web")
    assert record.stalled
    assert "has no files" in record.error


async def test_skip_up_to_date(
    scheduler: Scheduler, store: InMemoryStore, cluster: InMemoryCluster
) -> None:
    """Test units Ready at the same definition and content are not re-applied."""
    units = [unit_doc("infra"), unit_doc("apps", dependsOn=["infra"])]
    graph = make_graph(units)
    await scheduler.run(graph)
    records = store.list_records()
    apply_count = cluster.apply_count

    result = await scheduler.run(graph)
    assert result.ok
    assert result.ready == []
    assert result.skipped == ["apps", "infra"]
    assert cluster.apply_count == apply_count
    assert store.get_record("infra") is records["infra"]

    # Only the unit with new content is applied for a new snapshot
    graph = make_graph(
        units,
        objects={"apps": [configmap("apps", data={"key": "v2"})]},
        revision="main@sha1:2",
    )
    result = await scheduler.run(graph)
    assert result.ready == ["apps"]
    assert result.skipped == ["infra"]
    assert store.get_record("infra") is records["infra"]
    assert store.get_record("apps").revision == "main@sha1:2"
    live = cluster.objects[resource_id(configmap("apps"))]
    assert live["data"] == {"key": "v2"}


async def test_definition_change(scheduler: Scheduler) -> None:
    """Test a changed definition re-applies the unit."""
    await scheduler.run(make_graph([unit_doc("infra")]))
    result = await scheduler.run(
        make_graph([unit_doc("infra", targetNamespace="infra")], revision="sha1:2")
    )
    assert result.ready == ["infra"]


async def test_force(scheduler: Scheduler, cluster: InMemoryCluster) -> None:
    """Test forcing a unit that is already up to date."""
    graph = make_graph([unit_doc("infra"), unit_doc("apps", dependsOn=["infra"])])
    await scheduler.run(graph)
    apply_count = cluster.apply_count
    result = await scheduler.run(graph, force=["apps"])
    assert result.ready == ["apps"]
    assert result.skipped == ["infra"]
    assert cluster.apply_count == apply_count + 1


async def test_only(scheduler: Scheduler, store: InMemoryStore) -> None:
    """Test restricting a run to some units."""
    graph = make_graph([unit_doc("infra"), unit_doc("apps", dependsOn=["infra"])])
    result = await scheduler.run(graph, only={"infra"})
    assert result.ready == ["infra"]
    assert store.get_record("apps") is None

    # Dependencies outside of the run are judged by their records
    result = await scheduler.run(graph, only={"apps"})
    assert result.ready == ["apps"]


async def test_only_unknown_unit(scheduler: Scheduler) -> None:
    """Test restricting a run to a unit not in the graph."""
    graph = make_graph([unit_doc("infra")])
    with pytest.raises(KeyError, match="other"):
        await scheduler.run(graph, only={"other"})


async def test_suspended(
    scheduler: Scheduler, store: InMemoryStore, cluster: InMemoryCluster
) -> None:
    """Test suspended units are never applied and block their dependents."""
    graph = make_graph(
        [
            unit_doc("infra", suspend=True),
            unit_doc("apps", dependsOn=["infra"]),
            unit_doc("other"),
        ]
    )
    result = await scheduler.run(graph)
    assert result.suspended == ["infra"]
    assert result.blocked == ["apps"]
    assert result.ready == ["other"]
    assert store.get_record("infra").status == Status.PENDING
    assert resource_id(configmap("infra")) not in cluster.objects


async def test_prune_on_apply(scheduler: Scheduler, cluster: InMemoryCluster) -> None:
    """Test objects no longer rendered are deleted when prune is set."""
    units = [unit_doc("infra", prune=True), unit_doc("apps")]
    await scheduler.run(
        make_graph(
            units,
            objects={
                "infra": [configmap("a"), configmap("b")],
                "apps": [configmap("c"), configmap("d")],
            },
        )
    )
    await scheduler.run(
        make_graph(
            units,
            objects={"infra": [configmap("a")], "apps": [configmap("c")]},
            revision="main@sha1:2",
        )
    )
    assert set(cluster.objects) == {
        resource_id(configmap("a")),
        resource_id(configmap("c")),
        # The unit without prune leaves the object behind
        resource_id(configmap("d")),
    }


async def test_prune_removed_unit(
    scheduler: Scheduler, store: InMemoryStore, cluster: InMemoryCluster
) -> None:
    """Test units removed from the source are pruned and forgotten."""
    await scheduler.run(
        make_graph(
            [unit_doc("infra"), unit_doc("apps", prune=True), unit_doc("old")],
        )
    )
    result = await scheduler.run(make_graph([unit_doc("infra")], revision="sha1:2"))
    assert result.skipped == ["infra"]
    assert store.get_record("apps") is None
    assert store.get_artifact("apps") is None
    assert store.get_record("old") is None
    assert set(cluster.objects) == {
        resource_id(configmap("infra")),
        resource_id(configmap("old")),
    }


async def test_apply_unit_skips_dependencies(
    scheduler: Scheduler, store: InMemoryStore
) -> None:
    """Test applying a single unit does not wait on its dependencies."""
    graph = make_graph([unit_doc("infra"), unit_doc("apps", dependsOn=["infra"])])
    record = await scheduler.apply_unit(graph.get("apps"), graph.snapshot)
    assert record.status == Status.READY
    assert store.get_record("infra") is None


async def test_worker_pool_bounds_concurrency(
    store: InMemoryStore, scheduler_config: SchedulerConfig
) -> None:
    """Test independent units apply concurrently up to the pool size."""
    cluster = SlowCluster()
    scheduler = make_scheduler(cluster, store, scheduler_config, workers=2)
    graph = make_graph([unit_doc(f"unit-{i}") for i in range(5)])
    result = await scheduler.run(graph)
    assert len(result.ready) == 5
    assert cluster.max_active == 2


async def test_one_apply_in_flight_per_unit(
    store: InMemoryStore, scheduler_config: SchedulerConfig
) -> None:
    """Test concurrent requests to apply the same unit are serialized."""
    cluster = SlowCluster()
    scheduler = make_scheduler(cluster, store, scheduler_config)
    graph = make_graph([unit_doc("infra")])
    await asyncio.gather(
        scheduler.run(graph),
        scheduler.apply_unit(graph.get("infra"), graph.snapshot),
        scheduler.apply_unit(graph.get("infra"), graph.snapshot),
    )
    assert cluster.apply_count == 3
    assert cluster.max_active_by_name["infra"] == 1
    assert store.get_record("infra").status == Status.READY


async def test_supersede_changed_unit(
    scheduler: Scheduler, store: InMemoryStore
) -> None:
    """Test a new snapshot cancels in-flight work of a changed unit."""
    graph = make_graph([unit_doc("web")], objects={"web": [deployment("web")]})
    run = asyncio.create_task(scheduler.run(graph))
    await wait_for_status(store, "web", Status.APPLYING)
    assert scheduler.inflight() == ["web"]

    new_graph = make_graph(
        [unit_doc("web", wait=False)],
        objects={"web": [deployment("web")]},
        revision="main@sha1:2",
    )
    assert scheduler.supersede(new_graph) == ["web"]
    result = await run
    assert result.superseded == ["web"]
    assert result.ready == []
    record = store.get_record("web")
    assert record.status == Status.PENDING
    assert record.error == "superseded"

    result = await scheduler.run(new_graph)
    assert result.ready == ["web"]
    assert store.get_record("web").revision == "main@sha1:2"
    assert scheduler.inflight() == []


async def test_adopt_inflight_unit(
    scheduler: Scheduler, store: InMemoryStore, cluster: InMemoryCluster
) -> None:
    """Test unchanged in-flight work carries over to the next generation."""
    units = [unit_doc("web")]
    objects = {"web": [deployment("web")]}
    graph = make_graph(units, objects=objects)
    first = asyncio.create_task(scheduler.run(graph))
    await wait_for_status(store, "web", Status.APPLYING)

    new_graph = make_graph(
        units + [unit_doc("extra")], objects=objects, revision="main@sha1:2"
    )
    assert scheduler.supersede(new_graph) == []
    second = asyncio.create_task(scheduler.run(new_graph))
    await asyncio.sleep(0.05)
    assert scheduler.generation is not None
    assert scheduler.generation.number == 2

    cluster.set_status(resource_id(deployment("web")), DEPLOYMENT_READY)
    result = await second
    assert result.ready == ["extra", "web"]
    await first
    # The unit was applied once, by the first generation
    assert cluster.apply_count == 2


async def test_supersede_then_run_reschedules(
    scheduler: Scheduler, store: InMemoryStore
) -> None:
    """Test a changed unit is applied by a run started right after supersede."""
    graph = make_graph(
        [unit_doc("web"), unit_doc("frontend", dependsOn=["web"])],
        objects={"web": [deployment("web")]},
    )
    first = asyncio.create_task(scheduler.run(graph))
    await wait_for_status(store, "web", Status.APPLYING)

    new_graph = make_graph(
        [unit_doc("web", wait=False), unit_doc("frontend", dependsOn=["web"])],
        objects={"web": [deployment("web")]},
        revision="main@sha1:2",
    )
    assert scheduler.supersede(new_graph) == ["web"]
    # No suspension point between superseding and the next run
    result = await scheduler.run(new_graph)
    assert result.ready == ["frontend", "web"]
    assert result.superseded == []
    assert store.get_record("web").status == Status.READY
    assert store.get_record("web").revision == "main@sha1:2"

    result = await first
    assert result.superseded == ["web"]
    assert result.blocked == ["frontend"]
    assert scheduler.inflight() == []


async def test_close_cancels_inflight(
    scheduler: Scheduler, store: InMemoryStore
) -> None:
    """Test closing the scheduler stops in-flight work."""
    graph = make_graph([unit_doc("web")], objects={"web": [deployment("web")]})
    run = asyncio.create_task(scheduler.run(graph))
    await wait_for_status(store, "web", Status.APPLYING)
    await scheduler.close()
    result = await run
    assert result.superseded == ["web"]
    assert store.get_record("web").status == Status.PENDING
    assert_no_unit_applying(store)


def test_generation() -> None:
    """Test the generation cancellation token."""
    generation = Generation(3, "main@sha1:1")
    assert str(generation) == "generation 3 (main@sha1:1)"
    assert not generation.superseded
    assert not generation.is_cancelled("web")
    generation.supersede(["web"])
    assert generation.superseded
    assert generation.is_cancelled("web")
    assert not generation.is_cancelled("apps")


async def test_dependency_ready_record_not_in_run(
    scheduler: Scheduler, store: InMemoryStore
) -> None:
    """Test a dependency Ready in an earlier run gates a restricted run."""
    graph = make_graph([unit_doc("infra"), unit_doc("apps", dependsOn=["infra"])])
    await scheduler.run(graph, only={"infra"})
    store.update_status("infra", Status.FAILED, "regressed")
    result = await scheduler.run(graph, only={"apps"})
    assert result.blocked == ["apps"]
    assert store.get_record("apps").status == Status.PENDING
