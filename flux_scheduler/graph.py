"""Library for building the dependency graph of units from a snapshot.

The graph is rebuilt fully on every new snapshot. Building validates that
every unit definition parses, every dependency refers to a unit in the same
graph and that the dependencies form a DAG.

Example usage:

```python
from flux_scheduler.graph import GraphBuilder

graph = GraphBuilder().build(snapshot)
for name in graph.topological_order():
    print(name, graph.dependencies(name))
```
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from types import MappingProxyType

import yaml

from .exceptions import (
    CycleError,
    InputException,
    ParseError,
    UnknownDependency,
)
from .manifest import Unit, is_unit_doc, parse_unit_doc
from .source_controller import Snapshot

__all__ = [
    "Graph",
    "GraphBuilder",
]

_LOGGER = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")


@dataclass(frozen=True)
class Graph:
    """An immutable DAG of units for one snapshot.

    An edge from a unit to each of its dependencies means the dependency must
    be Ready before the unit is applied.
    """

    snapshot: Snapshot
    """The snapshot the graph was built from."""

    units: Mapping[str, Unit] = field(default_factory=dict)
    """Units keyed by name."""

    _dependents: Mapping[str, tuple[str, ...]] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "units", MappingProxyType(dict(self.units)))
        dependents: dict[str, list[str]] = {name: [] for name in self.units}
        for unit in self.units.values():
            for dep in unit.depends_on:
                if dep in dependents:
                    dependents[dep].append(unit.name)
        object.__setattr__(
            self,
            "_dependents",
            {name: tuple(sorted(names)) for name, names in dependents.items()},
        )

    def __contains__(self, name: object) -> bool:
        return name in self.units

    def __len__(self) -> int:
        return len(self.units)

    def get(self, name: str) -> Unit:
        """Return the unit with the specified name."""
        if (unit := self.units.get(name)) is None:
            raise KeyError(f"Unit {name} not found in graph")
        return unit

    def dependencies(self, name: str) -> tuple[str, ...]:
        """Return the names of the units the unit depends on."""
        return self.get(name).depends_on

    def dependents(self, name: str) -> tuple[str, ...]:
        """Return the names of the units that depend on the unit."""
        self.get(name)
        return self._dependents[name]

    def ancestors(self, name: str) -> set[str]:
        """Return all units the unit transitively depends on."""
        result: set[str] = set()
        stack = list(self.dependencies(name))
        while stack:
            dep = stack.pop()
            if dep in result:
                continue
            result.add(dep)
            stack.extend(self.dependencies(dep))
        return result

    def descendants(self, name: str) -> set[str]:
        """Return all units that transitively depend on the unit."""
        result: set[str] = set()
        stack = list(self.dependents(name))
        while stack:
            dep = stack.pop()
            if dep in result:
                continue
            result.add(dep)
            stack.extend(self.dependents(dep))
        return result

    def topological_order(self) -> list[str]:
        """Return unit names with every unit after its dependencies.

        Units in the same level are sorted by name so the order is stable.
        """
        remaining = {name: len(unit.depends_on) for name, unit in self.units.items()}
        level = sorted(name for name, count in remaining.items() if count == 0)
        order: list[str] = []
        while level:
            order.extend(level)
            next_level = []
            for name in level:
                for dependent in self.dependents(name):
                    remaining[dependent] -= 1
                    if remaining[dependent] == 0:
                        next_level.append(dependent)
            level = sorted(next_level)
        return order


def find_cycle(units: Mapping[str, Unit]) -> list[str] | None:
    """Return a dependency cycle as a closed path, or None for a DAG.

    Uses a depth-first traversal that tracks the current recursion stack; an
    edge back into the stack closes a cycle.
    """
    visited: set[str] = set()
    on_stack: dict[str, int] = {}
    path: list[str] = []

    def visit(name: str) -> list[str] | None:
        visited.add(name)
        on_stack[name] = len(path)
        path.append(name)
        for dep in units[name].depends_on:
            if dep in on_stack:
                return path[on_stack[dep] :] + [dep]
            if dep not in visited and (cycle := visit(dep)) is not None:
                return cycle
        path.pop()
        del on_stack[name]
        return None

    for name in sorted(units):
        if name not in visited and (cycle := visit(name)) is not None:
            return cycle
    return None


class GraphBuilder:
    """Parses units from a snapshot into a validated Graph."""

    def parse_units(self, snapshot: Snapshot) -> dict[str, Unit]:
        """Parse every unit definition in the snapshot.

        Raises:
            ParseError: On invalid YAML in a manifest, a malformed unit
                definition or a duplicate unit name.
        """
        units: dict[str, Unit] = {}
        for path in snapshot.paths:
            if not path.endswith(MANIFEST_SUFFIXES):
                continue
            try:
                docs = list(yaml.safe_load_all(snapshot.read(path)))
            except yaml.YAMLError as err:
                raise ParseError(None, path, f"invalid YAML: {err}") from err
            for doc in docs:
                if not is_unit_doc(doc):
                    continue
                try:
                    unit = parse_unit_doc(doc, path)
                except InputException as err:
                    raise ParseError(_doc_name(doc), path, str(err)) from err
                if (existing := units.get(unit.name)) is not None:
                    raise ParseError(
                        unit.name,
                        path,
                        f"duplicate unit name, already defined in {existing.path}",
                    )
                _LOGGER.debug("Found unit %s in %s", unit.name, path)
                units[unit.name] = unit
        return units

    def build(self, snapshot: Snapshot) -> Graph:
        """Build the Graph of units declared in the snapshot.

        Raises:
            ParseError: If a unit definition is malformed.
            UnknownDependency: If a unit depends on a unit not in the snapshot.
            CycleError: If the dependencies form a cycle.
        """
        units = self.parse_units(snapshot)
        for unit in units.values():
            for dep in unit.depends_on:
                if dep not in units:
                    raise UnknownDependency(unit.name, dep)
        if (cycle := find_cycle(units)) is not None:
            raise CycleError(cycle)
        _LOGGER.info("Built graph of %d units for %s", len(units), snapshot.revision)
        return Graph(snapshot=snapshot, units=units)


def _doc_name(doc: dict) -> str | None:
    if isinstance(name := doc.get("name"), str):
        return name
    metadata = doc.get("metadata")
    if isinstance(metadata, dict) and isinstance(name := metadata.get("name"), str):
        return name
    return None
