"""Flux-scheduler reconcile action."""

import logging
from argparse import (
    ArgumentParser,
    _SubParsersAction as SubParsersAction,
)
from typing import cast

from flux_scheduler.exceptions import FluxSchedulerException
from flux_scheduler.store import Status

from . import common
from .get import print_records

_LOGGER = logging.getLogger(__name__)


class ReconcileAction:
    """Apply a single unit after its dependencies."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "reconcile",
                help="Apply a unit and any dependencies that are not Ready",
                description=(
                    "Apply the unit even if it is up to date, after applying "
                    "the dependencies that are not Ready"
                ),
            ),
        )
        args.add_argument("unit", help="Name of the unit to reconcile")
        common.add_source_flags(args)
        common.add_cluster_flags(args)
        common.add_output_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        unit: str,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        orchestrator = await common.build_orchestrator(**kwargs)
        try:
            record = await orchestrator.reconcile(unit)
        finally:
            await orchestrator.close()
        print_records({unit: record}, output)
        if record.status != Status.READY:
            raise FluxSchedulerException(f"Unit {unit} is not Ready: {record}")
