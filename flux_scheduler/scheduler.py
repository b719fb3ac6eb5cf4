"""Dependency scheduler driving units through their apply lifecycle.

Each unit moves through `Pending -> Applying -> Ready | Failed`. A unit is
only eligible to apply once every dependency is Ready, and eligible units
are applied concurrently on the bounded worker pool of the task service.

Key Concepts:
    - Generation: A token tied to one `run` over one snapshot. Superseding a
      generation stops its units from entering Applying again, which is
      checked before every transition.
    - Apply Record: The per-unit state published to the Store. Records are
      only written while holding the per-unit lock of the store so there is
      at most one apply in flight per unit.
    - Backoff: A failed attempt is retried after `base * 2**retries` seconds,
      capped, while the next attempt still starts within the unit timeout.
      Otherwise the unit is stalled until the next generation.

Dependents of a Failed unit are never failed themselves. They remain Pending
and are reported as blocked until the unit recovers.
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
import logging

from .cluster import Cluster
from .config import SchedulerConfig
from .context import trace_context
from .decrypt import Decryptor, NoopDecryptor
from .exceptions import (
    ApplyFailed,
    CommandException,
    HealthCheckTimeout,
    InputException,
)
from .graph import Graph
from .health import HealthEvaluator
from .kustomize import Renderer
from .manifest import NamedResource, Unit
from .source_controller import Snapshot
from .store import ApplyRecord, RenderArtifact, Status, Store
from .task import TaskService, get_task_service

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Generation",
    "RunResult",
    "Scheduler",
]


class Generation:
    """Cancellation token for the work of one run over one snapshot."""

    def __init__(self, number: int, revision: str) -> None:
        """Initialize Generation."""
        self.number = number
        self.revision = revision
        self._cancelled: set[str] = set()
        self._superseded = False

    @property
    def superseded(self) -> bool:
        """Return True once a newer generation replaced this one."""
        return self._superseded

    def supersede(self, names: Iterable[str] = ()) -> None:
        """Stop starting new units and cancel the named units."""
        self._superseded = True
        self._cancelled.update(names)

    def is_cancelled(self, name: str) -> bool:
        """Return True if the unit must not enter Applying in this generation."""
        return name in self._cancelled

    def __str__(self) -> str:
        return f"generation {self.number} ({self.revision})"


@dataclass
class RunResult:
    """Summary of one scheduler run."""

    revision: str
    ready: list[str] = field(default_factory=list)
    """Units that reached Ready in this run."""

    failed: list[str] = field(default_factory=list)
    """Units that ended the run Failed."""

    blocked: list[str] = field(default_factory=list)
    """Units left Pending because a dependency is not Ready."""

    skipped: list[str] = field(default_factory=list)
    """Units already Ready at the same definition and content."""

    suspended: list[str] = field(default_factory=list)
    """Units never applied because they are suspended."""

    superseded: list[str] = field(default_factory=list)
    """Units whose work was cancelled by a newer generation."""

    @property
    def ok(self) -> bool:
        """Return True if no unit failed or was left blocked."""
        return not self.failed and not self.blocked


class Scheduler:
    """Applies the units of a graph in dependency order."""

    def __init__(
        self,
        store: Store,
        cluster: Cluster,
        health: HealthEvaluator,
        config: SchedulerConfig | None = None,
        renderer: Renderer | None = None,
        decryptor: Decryptor | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize the Scheduler.

        Args:
            store: The Apply Record table, written only by the scheduler.
            cluster: The cluster units are applied to.
            health: Evaluates readiness of applied units.
            config: Worker and backoff configuration.
            renderer: Renders the objects of a unit from a snapshot.
            decryptor: Decrypts secrets right before apply.
            task_service: Tracks unit tasks and bounds concurrent work.
        """
        self._store = store
        self._cluster = cluster
        self._health = health
        self._config = config or SchedulerConfig()
        self._renderer = renderer or Renderer()
        self._decryptor = decryptor or NoopDecryptor()
        self._task_service = task_service or get_task_service()
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._graph: Graph | None = None
        self._generation: Generation | None = None
        self._generations = 0

    @property
    def store(self) -> Store:
        """Return the Apply Record store."""
        return self._store

    @property
    def graph(self) -> Graph | None:
        """Return the graph of the most recent run."""
        return self._graph

    @property
    def generation(self) -> Generation | None:
        """Return the generation of the most recent run."""
        return self._generation

    def inflight(self) -> list[str]:
        """Return the names of units with work in flight."""
        return sorted(name for name, task in self._inflight.items() if not task.done())

    def supersede(self, graph: Graph) -> list[str]:
        """Invalidate in-flight work made stale by a newer graph.

        Work of units whose definition or content changed is cancelled. Work of
        units that no longer exist may finish its current attempt and the
        unit is pruned by the next run.

        Returns:
            The names of the units whose work was cancelled.
        """
        if self._graph is None or self._generation is None:
            return []
        old = self._graph
        changed = []
        removed = []
        for name in old.units:
            if name not in graph:
                removed.append(name)
            elif _fingerprint(old.get(name), old.snapshot) != _fingerprint(
                graph.get(name), graph.snapshot
            ):
                changed.append(name)
        self._generation.supersede(changed + removed)
        cancelled = []
        for name in changed:
            if (task := self._inflight.get(name)) is not None and not task.done():
                _LOGGER.info("Cancelling stale work of unit %s", name)
                task.cancel()
                cancelled.append(name)
        for name in removed:
            if name in self.inflight():
                _LOGGER.info("Unit %s was removed, letting in-flight work finish", name)
        return cancelled

    async def run(
        self,
        graph: Graph,
        only: Iterable[str] | None = None,
        force: Iterable[str] = (),
    ) -> RunResult:
        """Apply the units of the graph in dependency order.

        Args:
            graph: The graph to reconcile.
            only: Restrict the run to these units. Other units are not applied
                and their current records decide if they are Ready.
            force: Units applied even when already Ready at the same content.

        Returns:
            A summary of the final state of every unit in the run.
        """
        self._generations += 1
        generation = Generation(self._generations, graph.snapshot.revision)
        previous = self._generation
        if previous is not None and not previous.superseded:
            previous.supersede()
        with trace_context(f"run {generation.number}"):
            await self._prune_removed(graph)
            self._graph = graph
            self._generation = generation
            targets = set(graph.units) if only is None else set(only)
            for name in targets:
                graph.get(name)
                if self._store.get_record(name) is None:
                    self._store.set_record(name, ApplyRecord())
            _LOGGER.info(
                "Starting %s with %d of %d units", generation, len(targets), len(graph)
            )
            result = await self._run(graph, generation, targets, set(force), previous)
        _LOGGER.info(
            "Finished %s: %d ready, %d failed, %d blocked, %d skipped",
            generation,
            len(result.ready),
            len(result.failed),
            len(result.blocked),
            len(result.skipped),
        )
        return result

    async def _run(
        self,
        graph: Graph,
        generation: Generation,
        targets: set[str],
        force: set[str],
        previous: Generation | None = None,
    ) -> RunResult:
        result = RunResult(revision=graph.snapshot.revision)
        pending = set(targets)
        tasks: dict[asyncio.Task[None], str] = {}

        # Adopt work still in flight from an older generation for the same unit.
        # Cancelled work is left to finish and the unit is queued again behind
        # its lock.
        for name in sorted(pending):
            if (task := self._inflight.get(name)) is None or task.done():
                continue
            stale = previous is not None and previous.is_cancelled(name)
            if stale or task.cancelling():
                _LOGGER.debug("Rescheduling superseded unit %s", name)
                continue
            _LOGGER.debug("Adopting in-flight work of unit %s", name)
            pending.discard(name)
            tasks[task] = name

        def is_ready(name: str) -> bool:
            if name in pending or name in tasks.values():
                return False
            record = self._store.get_record(name)
            return record is not None and record.status == Status.READY

        while True:
            progress = True
            while progress and not generation.superseded:
                progress = False
                for name in sorted(pending):
                    unit = graph.get(name)
                    if unit.suspend:
                        _LOGGER.info("Unit %s is suspended", name)
                        pending.discard(name)
                        result.suspended.append(name)
                        continue
                    if not all(is_ready(dep) for dep in unit.depends_on):
                        continue
                    pending.discard(name)
                    progress = True
                    if name not in force and self._is_current(unit, graph.snapshot):
                        _LOGGER.debug("Unit %s is up to date", name)
                        result.skipped.append(name)
                        continue
                    task = self._task_service.create_task(
                        self._reconcile(unit, graph.snapshot, generation),
                        name=f"reconcile {name}",
                    )
                    self._track(name, task)
                    tasks[task] = name
            if not tasks:
                break
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                name = tasks.pop(task)
                record = self._store.get_record(name)
                if task.cancelled() or generation.is_cancelled(name):
                    result.superseded.append(name)
                elif record is not None and record.status == Status.READY:
                    result.ready.append(name)
                elif record is not None and record.status == Status.FAILED:
                    result.failed.append(name)
                else:
                    result.superseded.append(name)

        for name in sorted(pending):
            waiting = [dep for dep in graph.get(name).depends_on if not is_ready(dep)]
            _LOGGER.info("Unit %s is blocked on dependencies %s", name, waiting)
            result.blocked.append(name)
        for names in (result.ready, result.failed, result.skipped, result.superseded):
            names.sort()
        return result

    def _track(self, name: str, task: asyncio.Task[None]) -> None:
        self._inflight[name] = task

        def _done(task: asyncio.Task[None]) -> None:
            if self._inflight.get(name) is task:
                del self._inflight[name]

        task.add_done_callback(_done)

    def _is_current(self, unit: Unit, snapshot: Snapshot) -> bool:
        """Return True if the unit is Ready at the same definition and content."""
        record = self._store.get_record(unit.name)
        return (
            record is not None
            and record.status == Status.READY
            and (record.definition_digest, record.content_digest)
            == _fingerprint(unit, snapshot)
        )

    async def apply_unit(self, unit: Unit, snapshot: Snapshot) -> ApplyRecord:
        """Apply a single unit without checking its dependencies.

        The unit gets the same retry and backoff handling as in a run. Used to
        correct drift of a unit whose dependencies were already satisfied.
        """
        generation = self._generation or Generation(0, snapshot.revision)
        task = self._task_service.create_task(
            self._reconcile(unit, snapshot, generation), name=f"reconcile {unit.name}"
        )
        self._track(unit.name, task)
        await task
        record = self._store.get_record(unit.name)
        assert record is not None
        return record

    async def _reconcile(
        self, unit: Unit, snapshot: Snapshot, generation: Generation
    ) -> None:
        """Apply the unit with retries until Ready, stalled or cancelled."""
        name = unit.name
        loop = asyncio.get_running_loop()
        retries = 0
        error = ""
        deadline: float | None = None
        async with self._store.unit_lock(name):
            try:
                while True:
                    if generation.is_cancelled(name):
                        _LOGGER.info("Unit %s superseded by a newer snapshot", name)
                        return
                    async with self._task_service.worker_slot():
                        started = loop.time()
                        if deadline is None:
                            deadline = started + unit.timeout
                        self._store.update_status(
                            name,
                            Status.APPLYING,
                            revision=snapshot.revision,
                            retries=retries,
                            stalled=False,
                            apply_started_at=started,
                        )
                        try:
                            await self._apply(unit, snapshot, deadline)
                        except (ApplyFailed, HealthCheckTimeout) as err:
                            error = str(err)
                        else:
                            definition_digest, content_digest = _fingerprint(
                                unit, snapshot
                            )
                            self._store.update_status(
                                name,
                                Status.READY,
                                retries=retries,
                                ever_ready=True,
                                definition_digest=definition_digest,
                                content_digest=content_digest,
                                ready_at=loop.time(),
                            )
                            _LOGGER.info(
                                "Unit %s is Ready at %s", name, snapshot.revision
                            )
                            return

                    delay = min(
                        self._config.backoff_base * 2**retries, self._config.backoff_cap
                    )
                    retries += 1
                    if loop.time() + delay > deadline:
                        self._store.update_status(
                            name, Status.FAILED, error, retries=retries, stalled=True
                        )
                        _LOGGER.error(
                            "Unit %s stalled after %d attempts, timeout %ss exceeded",
                            name,
                            retries,
                            unit.timeout,
                        )
                        return
                    self._store.update_status(
                        name, Status.FAILED, error, retries=retries
                    )
                    _LOGGER.info("Retrying unit %s in %.1fs", name, delay)
                    await asyncio.sleep(delay)
            except asyncio.CancelledError:
                self._store.update_status(name, Status.PENDING, "superseded")
                raise

    async def _apply(self, unit: Unit, snapshot: Snapshot, deadline: float) -> None:
        """Render, apply, prune and wait for the unit to become healthy.

        Raises:
            ApplyFailed: If the unit could not be rendered, applied or pruned.
            HealthCheckTimeout: If the resources did not become ready in time.
        """
        with trace_context(f"apply {unit.name}"):
            try:
                objects = await self._renderer.render(unit, snapshot)
                await self._cluster.apply(await self._decryptor.decrypt_all(objects))
                artifact = RenderArtifact(
                    revision=snapshot.revision, manifests=objects, prune=unit.prune
                )
                previous = self._store.get_artifact(unit.name)
                if unit.prune and previous is not None:
                    current = set(artifact.inventory)
                    await self._prune(
                        unit.name,
                        [rid for rid in previous.inventory if rid not in current],
                    )
            except (InputException, CommandException) as err:
                raise ApplyFailed(unit.name, str(err)) from err
            except Exception as err:
                _LOGGER.error(
                    "Uncaught exception while applying unit %s: %s",
                    unit.name,
                    err,
                    exc_info=True,
                )
                raise ApplyFailed(
                    unit.name, f"unexpected {type(err).__name__}"
                ) from err
            self._store.set_artifact(unit.name, artifact)

            if not unit.wait:
                # Ready as soon as the apply call succeeded
                return
            remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
            await self._health.wait_ready(unit.name, artifact.inventory, remaining)

    async def _prune(self, name: str, resources: list[NamedResource]) -> None:
        for rid in reversed(resources):
            _LOGGER.info("Pruning %s of unit %s", rid, name)
            await self._cluster.delete(rid)

    async def _prune_removed(self, graph: Graph) -> None:
        """Prune and forget units that are no longer in the graph."""
        for name in sorted(self._store.list_records()):
            if name in graph:
                continue
            if name in self.inflight():
                _LOGGER.debug("Removed unit %s still has work in flight", name)
                continue
            artifact = self._store.get_artifact(name)
            if artifact is not None and artifact.prune:
                try:
                    await self._prune(name, artifact.inventory)
                except CommandException as err:
                    _LOGGER.error("Failed to prune removed unit %s: %s", name, err)
                    continue
            _LOGGER.info("Removing unit %s", name)
            self._store.remove_record(name)

    async def close(self) -> None:
        """Cancel all in-flight work and wait for it to exit."""
        tasks = [task for task in self._inflight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()


def _fingerprint(unit: Unit, snapshot: Snapshot) -> tuple[str, str]:
    """Return the definition and content digests of a unit at a snapshot."""
    return unit.definition_digest, snapshot.digest_for(unit.normalized_path)
