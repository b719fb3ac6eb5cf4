"""Exceptions related to flux-scheduler."""

__all__ = [
    "FluxSchedulerException",
    "InputException",
    "CommandException",
    "SourceUnavailable",
    "SourceEmpty",
    "GraphException",
    "ParseError",
    "CycleError",
    "UnknownDependency",
    "ApplyFailed",
    "HealthCheckTimeout",
]


class FluxSchedulerException(Exception):
    """Generic base exception used for this library."""


class InputException(FluxSchedulerException):
    """Raised when the input files or values are not formatted as expected."""


class CommandException(FluxSchedulerException):
    """Raised when there is a failure running a subcommand."""


class KustomizeException(CommandException):
    """Raised when there is a failure running a kustomize command."""


class KubectlException(CommandException):
    """Raised when there is a failure running a kubectl command."""


class DecryptException(CommandException):
    """Raised when a secret could not be decrypted."""


class SourceUnavailable(FluxSchedulerException):
    """Raised when the source could not be fetched (missing path, network, auth)."""


class SourceEmpty(FluxSchedulerException):
    """Raised when the source filter matched no paths."""


class GraphException(FluxSchedulerException):
    """Raised when the unit graph is structurally invalid and can't be scheduled."""


class ParseError(GraphException):
    """Raised when a unit definition is malformed."""

    def __init__(self, unit: str | None, path: str, cause: str) -> None:
        super().__init__(
            f"Unable to parse unit {unit or '<unknown>'} in {path}: {cause}"
        )
        self.unit = unit
        self.path = path
        self.cause = cause


class CycleError(GraphException):
    """Raised when the dependency edges between units form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")
        self.cycle = cycle


class UnknownDependency(GraphException):
    """Raised when a unit depends on a unit that is not in the graph."""

    def __init__(self, unit: str, missing: str) -> None:
        super().__init__(f"Unit {unit} depends on unknown unit {missing}")
        self.unit = unit
        self.missing = missing


class ApplyFailed(FluxSchedulerException):
    """Raised when the resources of a unit could not be rendered or applied."""

    def __init__(self, unit: str, cause: str) -> None:
        super().__init__(f"Unit {unit} apply failed: {cause}")
        self.unit = unit
        self.cause = cause


class HealthCheckTimeout(FluxSchedulerException):
    """Raised when the resources of a unit did not become ready in time."""

    def __init__(self, unit: str, message: str | None = None) -> None:
        super().__init__(
            f"Unit {unit} health check timed out: {message or 'resources not ready'}"
        )
        self.unit = unit
        self.message = message


class ObjectNotFoundError(FluxSchedulerException):
    """Raised when an object is not found in the store."""
