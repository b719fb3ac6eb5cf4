"""Task tracking module for flux-scheduler.

This module provides a task tracking service with a bounded worker pool
that the scheduler and drift reconciler use to run units concurrently.
"""

from .context import task_service_context, get_task_service
from .service import TaskService, TaskServiceImpl

__all__ = ["get_task_service", "task_service_context", "TaskService", "TaskServiceImpl"]
