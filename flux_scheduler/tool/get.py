"""Flux-scheduler get action."""

import logging
import pathlib
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import Any, cast

from flux_scheduler.exceptions import InputException
from flux_scheduler.manifest import Unit, format_duration
from flux_scheduler.store import ApplyRecord, read_state

from . import common
from .format import formatter

_LOGGER = logging.getLogger(__name__)

UNIT_COLS = ["name", "path", "namespace", "depends-on", "interval", "flags"]
STATUS_COLS = ["name", "status", "revision", "retries", "message"]


def unit_row(unit: Unit) -> dict[str, Any]:
    """Return the table row of a unit."""
    flags = [
        flag
        for flag, enabled in (
            ("prune", unit.prune),
            ("wait", unit.wait),
            ("suspend", unit.suspend),
        )
        if enabled
    ]
    return {
        "name": unit.name,
        "path": unit.source_path,
        "namespace": unit.target_namespace,
        "depends-on": list(unit.depends_on),
        "interval": format_duration(unit.interval),
        "flags": flags,
    }


def record_row(name: str, record: ApplyRecord) -> dict[str, Any]:
    """Return the table row of an Apply Record."""
    message = record.error.split("\n")[0] if record.error else None
    if record.stalled:
        message = f"stalled: {message}"
    return {
        "name": name,
        "status": str(record.status),
        "revision": record.revision,
        "retries": record.retries,
        "message": message,
    }


def print_units(units: list[Unit], output: str) -> None:
    """Print units in the requested output format."""
    if output == "table":
        formatter(output, UNIT_COLS).print([unit_row(unit) for unit in units])
        return
    formatter(output).print([unit.to_dict() for unit in units])


def print_records(records: dict[str, ApplyRecord], output: str) -> None:
    """Print Apply Records in the requested output format."""
    if output == "table":
        formatter(output, STATUS_COLS).print(
            [record_row(name, record) for name, record in records.items()]
        )
        return
    formatter(output).print(
        [{"name": name, **record.to_dict()} for name, record in records.items()]
    )


class GetUnitsAction:
    """Get the units declared in the source."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "units",
                aliases=["unit"],
                help="List the units declared in the source",
                description="Print the units in dependency order",
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
        await orchestrator.refresh()
        units = orchestrator.list_units()
        if not units:
            print("No units found")
            return
        print_units(units, output)


class GetStatusAction:
    """Get the status of units from a previous run."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "status",
                help="Print the Apply Records of the last run",
                description="Print the Apply Records saved in a state file",
            ),
        )
        common.add_state_flags(args)
        common.add_output_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        state_file: pathlib.Path | None,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        if state_file is None:
            raise InputException("Flag --state-file is required")
        state = await read_state(state_file)
        if not state.units:
            print("No units found")
            return
        print_records(dict(sorted(state.units.items())), output)


class GetAction:
    """Flux-scheduler get action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "get",
                help="Print information about units",
                description="Print information about units and their status",
            ),
        )
        subcmds = args.add_subparsers(
            title="Available commands",
            required=True,
        )
        GetUnitsAction.register(subcmds)
        GetStatusAction.register(subcmds)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        # No-op given subcommands are always the dispatch target
