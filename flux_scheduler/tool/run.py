"""Flux-scheduler run action."""

import logging
from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
from typing import cast

from flux_scheduler.context import get_trace_collector
from flux_scheduler.exceptions import FluxSchedulerException

from . import common
from .get import print_records

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Apply all units of the source in dependency order."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Apply the units of the source",
                description=(
                    "Poll the source and apply every unit after its "
                    "dependencies, correcting drift until interrupted"
                ),
            ),
        )
        args.add_argument(
            "--once",
            type=bool,
            default=False,
            action=BooleanOptionalAction,
            help="Apply the current snapshot once and exit",
        )
        common.add_source_flags(args)
        common.add_cluster_flags(args)
        common.add_output_flags(args)
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        once: bool,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        orchestrator = await common.build_orchestrator(**kwargs)
        if not once:
            await orchestrator.run_forever()
            return

        with get_trace_collector() as collector:
            try:
                result = await orchestrator.run_once()
            finally:
                await orchestrator.close()
        for name, duration in sorted(collector.timings.items()):
            _LOGGER.debug(
                "%s: %d calls in %0.2fs", name, collector.counts[name], duration
            )
        print_records(orchestrator.get_status(), output)
        if not result.ok:
            problems = [f"{name} failed" for name in result.failed] + [
                f"{name} blocked" for name in result.blocked
            ]
            raise FluxSchedulerException(
                f"Not all units are Ready: {', '.join(problems)}"
            )
