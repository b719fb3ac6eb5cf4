"""Shared fixtures for flux-scheduler tests."""

from collections.abc import Generator

import pytest

from flux_scheduler.cluster import InMemoryCluster
from flux_scheduler.config import HealthConfig, SchedulerConfig
from flux_scheduler.health import HealthEvaluator
from flux_scheduler.scheduler import Scheduler
from flux_scheduler.store import InMemoryStore
from flux_scheduler.task import TaskService, task_service_context


@pytest.fixture(autouse=True)
def task_service() -> Generator[TaskService, None, None]:
    """Give every test its own task service and worker pool."""
    with task_service_context(workers=4) as service:
        yield service


@pytest.fixture
def store() -> InMemoryStore:
    """Create an in-memory store for testing."""
    return InMemoryStore()


@pytest.fixture
def cluster() -> InMemoryCluster:
    """Create an in-memory cluster for testing."""
    return InMemoryCluster()


@pytest.fixture
def health(cluster: InMemoryCluster) -> HealthEvaluator:
    """Create a health evaluator that polls quickly."""
    return HealthEvaluator(cluster, HealthConfig(poll_interval=0.01))


@pytest.fixture
def scheduler_config() -> SchedulerConfig:
    """Return a scheduler config with short backoff delays."""
    return SchedulerConfig(workers=4, backoff_base=0.01, backoff_cap=0.02)


@pytest.fixture
def scheduler(
    store: InMemoryStore,
    cluster: InMemoryCluster,
    health: HealthEvaluator,
    scheduler_config: SchedulerConfig,
    task_service: TaskService,
) -> Generator[Scheduler, None, None]:
    """Create a Scheduler against the in-memory cluster."""
    yield Scheduler(
        store, cluster, health, config=scheduler_config, task_service=task_service
    )
