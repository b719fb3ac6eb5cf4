"""Library for issuing commands using asyncio and returning the result.

This is the boundary used for the external tools the scheduler drives
(`kustomize`, `kubectl`, `sops`). Commands are executed without a shell and
with a bounded amount of concurrency across the whole process.
"""

import asyncio
import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .exceptions import CommandException

_LOGGER = logging.getLogger(__name__)

_CONCURRENCY = 20
_SEM = asyncio.Semaphore(_CONCURRENCY)
DEFAULT_TIMEOUT = 60.0


# No public API
__all__: list[str] = []


def format_path(path: Path) -> str:
    """Format path for debugging."""
    if path.is_absolute():
        cwd = Path.cwd()
        if path.is_relative_to(cwd):
            rel_path = str(path.relative_to(cwd))
            return f"{rel_path} (abs)"
    return str(path)


@dataclass
class Command:
    """An instance of a command to run."""

    cmd: list[str]
    """Array of command line arguments."""

    cwd: Path | None = None
    """Current working directory."""

    exc: type[CommandException] = CommandException
    """Exception to throw in case of an error."""

    retcodes: list[int] | None = None
    """Non-zero error codes that are allowed to indicate success."""

    env: dict[str, str] | None = None
    """Environment variables for the subprocess."""

    timeout: float = DEFAULT_TIMEOUT
    """Seconds to wait for the process before failing."""

    @property
    def string(self) -> str:
        """Render the command as a single string."""
        return " ".join([shlex.quote(arg) for arg in self.cmd])

    def __str__(self) -> str:
        """Render as a debug string."""
        cwd: str = ""
        if self.cwd:
            cwd = f"({format_path(self.cwd)}) "
        return f"{cwd}{self.string}"

    async def _communicate(self, stdin: bytes | None) -> bytes:
        _LOGGER.debug("Running command: %s", self)
        env = {
            **os.environ,
            **(self.env if self.env else {}),
        }
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as err:
            raise self.exc(f"Command '{self}' could not be started: {err}") from err
        try:
            out, err = await asyncio.wait_for(proc.communicate(stdin), self.timeout)
        except asyncio.TimeoutError as err:
            proc.kill()
            await proc.wait()
            raise self.exc(f"Command '{self}' timed out") from err
        if proc.returncode:
            if self.retcodes and proc.returncode in self.retcodes:
                return out
            errors = [f"Command '{self}' failed with return code {proc.returncode}"]
            if out:
                errors.append(out.decode("utf-8"))
            if err:
                errors.append(err.decode("utf-8"))
            _LOGGER.debug("\n".join(errors))
            raise self.exc("\n".join(errors))
        return out

    async def run(self, stdin: bytes | None = None) -> bytes:
        """Run the command, returning stdout."""
        async with _SEM:
            return await self._communicate(stdin)


async def run(cmd: Command, stdin: bytes | None = None) -> str:
    """Run the specified command and return stdout."""
    out = await cmd.run(stdin)
    return out.decode("utf-8") if out else ""
