"""Flux-scheduler graph action."""

from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import cast

from . import common
from .format import formatter

GRAPH_COLS = ["level", "name", "depends-on"]


class GraphAction:
    """Print the dependency graph of the units."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "graph",
                help="Print the units in the order they are applied",
                description=(
                    "Validate the unit dependencies and print each unit with "
                    "the level it is applied at"
                ),
            ),
        )
        common.add_source_flags(args)
        common.add_output_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        orchestrator = await common.build_orchestrator(**kwargs)
        graph, _ = await orchestrator.refresh()
        levels: dict[str, int] = {}
        rows = []
        for name in graph.topological_order():
            deps = graph.dependencies(name)
            levels[name] = max((levels[dep] + 1 for dep in deps), default=0)
            rows.append({"level": levels[name], "name": name, "depends-on": list(deps)})
        formatter(output, GRAPH_COLS).print(rows)
