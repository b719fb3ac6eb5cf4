"""Orchestrator for flux-scheduler.

This module provides the main orchestrator that wires the source watcher,
graph builder, scheduler and drift reconciler together. It drives them as a
cooperative polling loop: every new snapshot becomes a new graph, stale work
of the previous generation is superseded and the new graph is scheduled.
"""

import asyncio
import logging
from pathlib import Path

from flux_scheduler.cluster import Cluster
from flux_scheduler.config import OrchestratorConfig
from flux_scheduler.context import trace_context
from flux_scheduler.decrypt import Decryptor
from flux_scheduler.drift import DriftReconciler
from flux_scheduler.exceptions import (
    FluxSchedulerException,
    ObjectNotFoundError,
    SourceEmpty,
    SourceUnavailable,
)
from flux_scheduler.graph import Graph, GraphBuilder
from flux_scheduler.health import HealthEvaluator
from flux_scheduler.kustomize import Renderer
from flux_scheduler.manifest import Unit
from flux_scheduler.scheduler import RunResult, Scheduler
from flux_scheduler.source_controller import SourceWatcher
from flux_scheduler.store import ApplyRecord, InMemoryStore, State, Store, write_state
from flux_scheduler.task import TaskServiceImpl

_LOGGER = logging.getLogger(__name__)


class Orchestrator:
    """Orchestrator for coordinating the reconciliation of units.

    The orchestrator is responsible for:
    - Polling the source and building a graph for every new snapshot
    - Superseding in-flight work of the previous snapshot generation
    - Running the scheduler and the per-unit drift loops
    - Persisting the Apply Records after every run
    """

    def __init__(
        self,
        watcher: SourceWatcher,
        cluster: Cluster,
        store: Store | None = None,
        config: OrchestratorConfig | None = None,
        renderer: Renderer | None = None,
        decryptor: Decryptor | None = None,
        health: HealthEvaluator | None = None,
        state_file: Path | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            watcher: Produces snapshots of the source.
            cluster: The cluster units are applied to.
            store: The Apply Record table, e.g. restored from a state file.
            config: Configuration of the orchestrator and its components.
            renderer: Renders the objects of a unit.
            decryptor: Decrypts secrets before apply.
            health: Evaluates readiness of applied units.
            state_file: Where the Apply Records are written after each run.
        """
        self.watcher = watcher
        self.store = store or InMemoryStore()
        self.config = config or OrchestratorConfig()
        self._state_file = state_file
        self._builder = GraphBuilder()
        self.task_service = TaskServiceImpl(self.config.scheduler.workers)
        self.scheduler = Scheduler(
            self.store,
            cluster,
            health or HealthEvaluator(cluster, self.config.health),
            config=self.config.scheduler,
            renderer=renderer,
            decryptor=decryptor,
            task_service=self.task_service,
        )
        self.drift = DriftReconciler(
            self.store, self.scheduler, cluster, task_service=self.task_service
        )
        self._graph: Graph | None = None
        self._run_task: asyncio.Task[RunResult] | None = None

    @property
    def graph(self) -> Graph | None:
        """Return the graph of the most recent snapshot."""
        return self._graph

    async def refresh(self) -> tuple[Graph, bool]:
        """Poll the source and rebuild the graph if the snapshot changed.

        Returns:
            The current graph and True if it was rebuilt from a new snapshot.

        Raises:
            SourceUnavailable: If the source could not be fetched.
            SourceEmpty: If no paths matched the filter.
            GraphException: If the new snapshot holds an invalid graph.
        """
        snapshot = await self.watcher.poll()
        if snapshot is None:
            assert self._graph is not None
            return self._graph, False
        with trace_context("build graph"):
            graph = self._builder.build(snapshot)
        if self._graph is not None:
            self.scheduler.supersede(graph)
        self._graph = graph
        return graph, True

    async def run_once(self) -> RunResult:
        """Poll the source once and schedule the resulting graph.

        Graph errors are fatal and propagate to the caller.
        """
        with trace_context("run_once"):
            graph, _ = await self.refresh()
            result = await self.scheduler.run(graph)
        await self.save_state()
        return result

    async def _run(self, graph: Graph) -> RunResult:
        result = await self.scheduler.run(graph)
        await self.save_state()
        return result

    async def run_forever(self) -> None:
        """Poll the source at the configured interval until cancelled.

        Unavailable or empty sources are logged and retried on the next poll.
        A structurally invalid graph stops the loop.
        """
        _LOGGER.info(
            "Polling %s every %ss", self.watcher.source, self.config.poll_interval
        )
        try:
            while True:
                try:
                    graph, changed = await self.refresh()
                except (SourceUnavailable, SourceEmpty) as err:
                    _LOGGER.error("Failed to poll source: %s", err)
                else:
                    if changed:
                        await self._cancel_run()
                        self._run_task = self.task_service.create_task(
                            self._run(graph), name=f"run {graph.snapshot.revision}"
                        )
                        if self.config.drift:
                            self.drift.start(graph)
                await asyncio.sleep(self.config.poll_interval)
        finally:
            await self.close()

    async def _cancel_run(self) -> None:
        if self._run_task is None or self._run_task.done():
            return
        self._run_task.cancel()
        try:
            await self._run_task
        except asyncio.CancelledError:
            _LOGGER.debug("Previous run was superseded")

    async def reconcile(self, name: str) -> ApplyRecord:
        """Re-apply a single unit after its dependencies.

        Dependencies that are not Ready at their current content are applied
        first, the unit itself is applied even when it is up to date.

        Raises:
            ObjectNotFoundError: If the unit is not in the graph.
        """
        if self._graph is None:
            await self.refresh()
        assert self._graph is not None
        if name not in self._graph:
            raise ObjectNotFoundError(f"Unit {name} not found")
        only = self._graph.ancestors(name) | {name}
        await self.scheduler.run(self._graph, only=only, force=[name])
        await self.save_state()
        record = self.store.get_record(name)
        assert record is not None
        return record

    def list_units(self) -> list[Unit]:
        """Return the units of the current graph in dependency order."""
        if self._graph is None:
            return []
        return [self._graph.get(name) for name in self._graph.topological_order()]

    def get_status(self) -> dict[str, ApplyRecord]:
        """Return the Apply Record of every known unit, sorted by name."""
        records = self.store.list_records()
        if self._graph is not None:
            for name in self._graph.units:
                records.setdefault(name, ApplyRecord())
        return dict(sorted(records.items()))

    async def save_state(self) -> None:
        """Write the Apply Records to the state file, if one is configured."""
        if self._state_file is None:
            return
        revision = self._graph.snapshot.revision if self._graph is not None else None
        state = State(revision=revision, units=self.store.list_records())
        try:
            await write_state(self._state_file, state)
        except OSError as err:
            raise FluxSchedulerException(
                f"Unable to write state file {self._state_file}: {err}"
            ) from err
        _LOGGER.debug(
            "Saved state of %d units to %s", len(state.units), self._state_file
        )

    async def close(self) -> None:
        """Stop drift loops and in-flight work."""
        _LOGGER.info("Stopping orchestrator")
        await self.drift.close()
        await self._cancel_run()
        await self.scheduler.close()
        await self.task_service.block_till_done()
