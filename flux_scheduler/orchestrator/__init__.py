"""Orchestrator for flux-scheduler.

This module provides the polling loop that ties the source watcher, graph
builder, scheduler and drift reconciler together.
"""

from .orchestrator import Orchestrator

__all__ = [
    "Orchestrator",
]
