"""Context management for TaskService."""

import contextvars
import contextlib
import logging
from collections.abc import Generator

from .service import TaskService, TaskServiceImpl

__all__: list[str] = []

_LOGGER = logging.getLogger(__name__)

# Context variable for the current task service instance
_task_service_ctx: contextvars.ContextVar[TaskService | None] = contextvars.ContextVar(
    "_task_service_ctx", default=None
)


def get_task_service() -> TaskService:
    """Get the current task service instance.

    If no instance is set in the context variable, creates a new one with the
    default number of workers.
    """
    instance = _task_service_ctx.get()
    if instance is None:
        instance = TaskServiceImpl()
        _task_service_ctx.set(instance)
    return instance


@contextlib.contextmanager
def task_service_context(
    service: TaskService | None = None, workers: int | None = None
) -> Generator[TaskService, None, None]:
    """Context manager that makes a TaskService current for the enclosed block.

    Args:
        service: Optional existing TaskService instance to use. If None,
                 a new instance will be created.
        workers: Size of the worker pool when creating a new instance.

    Yields:
        The TaskService instance to use within the context
    """
    if service is None:
        service = TaskServiceImpl() if workers is None else TaskServiceImpl(workers)
    token = _task_service_ctx.set(service)
    try:
        yield service
    finally:
        _task_service_ctx.reset(token)
