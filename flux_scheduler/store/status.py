"""Status information for a unit."""

from dataclasses import dataclass, field
from enum import StrEnum

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig


class Status(StrEnum):
    """Processing status for a unit."""

    PENDING = "Pending"
    APPLYING = "Applying"
    READY = "Ready"
    FAILED = "Failed"


@dataclass(frozen=True)
class ApplyRecord(DataClassDictMixin):
    """The reconciliation state of a single unit.

    Records are immutable values. The scheduler publishes a new record on every
    transition so that readers never observe a partially updated record.
    """

    status: Status = Status.PENDING

    revision: str | None = None
    """The snapshot revision of the last apply attempt."""

    error: str | None = None
    """The error of the last failed attempt."""

    retries: int = 0
    """The number of retries since the unit last started applying."""

    stalled: bool = False
    """True when retries were exhausted for the current snapshot generation."""

    ever_ready: bool = field(default=False, metadata=field_options(alias="everReady"))
    """True once the unit reached Ready, until explicitly reset."""

    definition_digest: str | None = field(
        default=None, metadata=field_options(alias="definitionDigest")
    )
    content_digest: str | None = field(
        default=None, metadata=field_options(alias="contentDigest")
    )

    apply_started_at: float | None = field(
        default=None, metadata=field_options(alias="applyStartedAt")
    )
    """Event loop time the unit last entered Applying."""

    ready_at: float | None = field(
        default=None, metadata=field_options(alias="readyAt")
    )
    """Event loop time the unit last became Ready."""

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.error:
            return f"{self.status}: {self.error}"
        return str(self.status)

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True
