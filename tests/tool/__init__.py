"""Test helpers for flux-scheduler tools."""

from flux_scheduler.command import Command, run

FLUX_SCHEDULER_BIN = "flux-scheduler"


async def run_command(args: list[str], env: dict[str, str] | None = None) -> str:
    return await run(Command([FLUX_SCHEDULER_BIN] + args, env=env))
