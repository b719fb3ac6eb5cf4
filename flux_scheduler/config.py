"""Configuration objects for flux-scheduler.

Configuration may be loaded from a YAML file with the same structure as the
dataclasses, using camelCase keys e.g.:

```yaml
scheduler:
  workers: 4
  backoffBase: 5s
  backoffCap: 5m
health:
  pollInterval: 2s
pollInterval: 1m
drift: true
```
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue, ExtraKeysError

from .exceptions import InputException
from .manifest import parse_duration

__all__ = [
    "SchedulerConfig",
    "HealthConfig",
    "OrchestratorConfig",
    "load_config",
]


def _duration(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    return parse_duration(str(value))


@dataclass
class SchedulerConfig(DataClassDictMixin):
    """Configuration for the dependency Scheduler."""

    workers: int = 4
    """Number of units that may be applying or health checking at once."""

    backoff_base: float = field(
        default=5.0,
        metadata=field_options(alias="backoffBase", deserialize=_duration),
    )
    """Delay in seconds before the first retry of a failed unit."""

    backoff_cap: float = field(
        default=300.0,
        metadata=field_options(alias="backoffCap", deserialize=_duration),
    )
    """Upper bound on the delay between retries."""

    class Config(BaseConfig):
        forbid_extra_keys = True
        serialize_by_alias = True


@dataclass
class HealthConfig(DataClassDictMixin):
    """Configuration for the HealthEvaluator."""

    poll_interval: float = field(
        default=2.0,
        metadata=field_options(alias="pollInterval", deserialize=_duration),
    )
    """Delay in seconds between readiness checks of live resources."""

    class Config(BaseConfig):
        forbid_extra_keys = True
        serialize_by_alias = True


@dataclass
class OrchestratorConfig(DataClassDictMixin):
    """Configuration for the orchestrator."""

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    poll_interval: float = field(
        default=60.0,
        metadata=field_options(alias="pollInterval", deserialize=_duration),
    )
    """Delay in seconds between polls of the source."""

    drift: bool = True
    """Whether to run the drift reconciler loops in `run_forever`."""

    class Config(BaseConfig):
        forbid_extra_keys = True
        serialize_by_alias = True


def load_config(path: Path) -> OrchestratorConfig:
    """Load an OrchestratorConfig from a YAML file."""
    try:
        doc = yaml.safe_load(path.read_text()) or {}
    except OSError as err:
        raise InputException(f"Unable to read config file {path}: {err}") from err
    except yaml.YAMLError as err:
        raise InputException(f"Invalid YAML in config file {path}: {err}") from err
    if not isinstance(doc, dict):
        raise InputException(f"Config file {path} must contain a mapping")
    try:
        return OrchestratorConfig.from_dict(doc)
    except (MissingField, InvalidFieldValue, ExtraKeysError, ValueError) as err:
        raise InputException(f"Invalid config file {path}: {err}") from err
