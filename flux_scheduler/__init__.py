"""
flux-scheduler applies the units of a flux repository in dependency order.

The library is split into the source watcher, the graph builder, the
scheduler with its health evaluator and the drift reconciler, which the
orchestrator drives as a polling loop.
"""

__all__ = [
    "cluster",
    "config",
    "exceptions",
    "graph",
    "health",
    "manifest",
    "scheduler",
    "source_controller",
    "store",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
