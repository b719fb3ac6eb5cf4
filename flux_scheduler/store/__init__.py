"""
The store module holds the Apply Record table: the per-unit reconciliation
state shared between the scheduler, the health evaluator and the drift
reconciler.

- Records are keyed by unit name and are immutable values replaced wholesale.
- Only the scheduler writes records, while holding the unit's lock.
- Listeners allow waiting for a unit to become Ready without polling.

Implementations may keep records in memory or persist them.
"""

from .store import Store, StoreEvent
from .in_memory import InMemoryStore
from .artifact import RenderArtifact
from .status import ApplyRecord, Status
from .state import State, read_state, write_state

__all__ = [
    "Store",
    "StoreEvent",
    "InMemoryStore",
    "RenderArtifact",
    "ApplyRecord",
    "Status",
    "State",
    "read_state",
    "write_state",
]
