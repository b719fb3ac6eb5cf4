"""Task tracking service and worker pool for flux-scheduler.

Units are reconciled by asyncio tasks. The number of units performing work
at once (applying or waiting on health checks) is bounded by the worker
slots of the service, while tasks waiting on dependencies or sleeping for a
retry backoff hold no slot.
"""

import asyncio
from contextlib import asynccontextmanager
from functools import partial
import logging
from typing import Any, AsyncIterator, Coroutine, Set
from abc import ABC, abstractmethod

_LOGGER = logging.getLogger(__name__)

__all__: list[str] = []

DEFAULT_WORKERS = 4


class TaskService(ABC):
    """Service for tracking and waiting for asynchronous tasks."""

    @abstractmethod
    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task.

        Args:
            coro: The coroutine to run as a task
            name: Optional name of the task, used for debugging

        Returns:
            The created task
        """

    @abstractmethod
    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new long running background task.

        Background tasks are not waited on by `block_till_done`.
        """

    @abstractmethod
    def worker_slot(self) -> Any:
        """Return an async context manager that holds one worker slot."""

    @abstractmethod
    async def block_till_done(self) -> None:
        """Wait for all active non-background tasks to complete."""

    @abstractmethod
    def get_num_active_tasks(self) -> int:
        """Get the number of active non-background tasks."""


class TaskServiceImpl(TaskService):
    """Service for tracking asynchronous tasks with a bounded worker pool."""

    def __init__(self, workers: int = DEFAULT_WORKERS) -> None:
        """Initialize the task service."""
        if workers < 1:
            raise ValueError(f"Worker pool must have at least one worker: {workers}")
        self._workers = workers
        self._slots = asyncio.Semaphore(workers)
        self._busy = 0
        self._active_tasks: Set[asyncio.Task[Any]] = set()
        self._background_tasks: Set[asyncio.Task[Any]] = set()

    @property
    def workers(self) -> int:
        """Return the size of the worker pool."""
        return self._workers

    @property
    def busy_workers(self) -> int:
        """Return the number of worker slots currently held."""
        return self._busy

    def create_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new task."""
        task = asyncio.create_task(coro, name=name)
        self._active_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._active_tasks))
        return task

    def create_background_task(
        self, coro: Coroutine[None, None, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track a new background task."""
        task = asyncio.create_task(coro, name=name)
        self._background_tasks.add(task)
        task.add_done_callback(partial(self._task_done, self._background_tasks))
        return task

    @asynccontextmanager
    async def worker_slot(self) -> AsyncIterator[None]:
        """Hold one worker slot for the duration of the context."""
        async with self._slots:
            self._busy += 1
            try:
                yield
            finally:
                self._busy -= 1

    def _task_done(
        self, task_set: Set[asyncio.Task[Any]], task: asyncio.Task[Any]
    ) -> None:
        """Callback when a task is done."""
        try:
            # This will raise any exception that occurred in the task
            task.result()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            _LOGGER.error("Task %s failed: %s", task.get_name(), e)
        finally:
            task_set.discard(task)

    async def block_till_done(self) -> None:
        """Wait for all active tasks to complete.

        This method creates a copy of the current active tasks and waits
        for them to complete. It's safe to call even if new tasks are created
        while waiting.
        """
        active_tasks = list(self._active_tasks)
        if active_tasks:
            _LOGGER.debug("Waiting for %d tasks to complete", len(active_tasks))
            await asyncio.gather(*active_tasks, return_exceptions=True)
        else:
            _LOGGER.debug("No active tasks to wait for")
            await asyncio.sleep(0)

    def get_num_active_tasks(self) -> int:
        """Get the number of active tasks."""
        return len(self._active_tasks)
