"""Persistence of Apply Records between runs of the command line tool."""

from dataclasses import dataclass, field
import logging
from pathlib import Path

import aiofiles
import yaml
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue

from flux_scheduler.exceptions import InputException

from .status import ApplyRecord

__all__ = [
    "State",
    "read_state",
    "write_state",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class State(DataClassDictMixin):
    """Serialized Apply Records of the last run."""

    revision: str | None = None
    """The revision of the last snapshot that was scheduled."""

    units: dict[str, ApplyRecord] = field(default_factory=dict)
    """Apply Records keyed by unit name."""

    class Config(BaseConfig):
        omit_none = True


async def read_state(state_path: Path) -> State:
    """Return the contents of a serialized state file.

    A missing file is an empty state, as if nothing was ever applied.
    """
    if not state_path.exists():
        _LOGGER.debug("State file %s does not exist", state_path)
        return State()
    async with aiofiles.open(str(state_path)) as state_file:
        content = await state_file.read()
    if not content.strip():
        return State()
    try:
        return yaml_decode(content, State)
    except (yaml.YAMLError, MissingField, InvalidFieldValue, ValueError) as err:
        raise InputException(f"Invalid state file {state_path}: {err}") from err


async def write_state(state_path: Path, state: State) -> None:
    """Write the state to disk."""
    content = yaml_encode(state, State)
    async with aiofiles.open(str(state_path), mode="w") as state_file:
        await state_file.write(content)
