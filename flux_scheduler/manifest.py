"""Representation of the declared units of a cluster.

A unit is a named, independently reconciled bundle of declared resources,
the equivalent of a flux `Kustomization`. Units are read from YAML documents
in either a plain format:

```yaml
name: apps
sourcePath: ./apps
targetNamespace: apps
dependsOn: [infrastructure]
prune: true
interval: 10m
timeout: 5m
wait: true
```

or from flux `Kustomization` objects, in which case the unit name is the
namespaced name of the Kustomization (e.g. `flux-system/apps`).
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
import hashlib
import json
import logging
import re
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "Unit",
    "SourceFilter",
    "parse_duration",
    "format_duration",
    "parse_unit_doc",
    "is_unit_doc",
    "resource_id",
]

_LOGGER = logging.getLogger(__name__)


# Match a prefix of apiVersion to ensure we have the right type of object.
# We don't check specific versions for forward compatibility on upgrade.
FLUXTOMIZE_DOMAIN = "kustomize.toolkit.fluxcd.io"
KUSTOMIZE_KIND = "Kustomization"
SECRET_KIND = "Secret"
UNIT_KIND = "Unit"
DEFAULT_NAMESPACE = "flux-system"
DEFAULT_INTERVAL = 600.0

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str) -> float:
    """Parse a go style duration string (e.g. `1h30m`, `45s`) into seconds."""
    value = value.strip()
    if value == "0":
        return 0.0
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if not value or pos != len(value):
        raise InputException(f"Invalid duration '{value}'")
    return total


def format_duration(seconds: float) -> str:
    """Format seconds as a compact go style duration string."""
    if seconds < 1:
        return f"{round(seconds * 1000)}ms" if seconds else "0s"
    remaining = int(seconds)
    parts = []
    for unit, size in (("h", 3600), ("m", 60), ("s", 1)):
        if remaining >= size:
            parts.append(f"{remaining // size}{unit}")
            remaining %= size
    return "".join(parts)


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str
    api_version: str | None = field(default=None, compare=False)
    """The apiVersion of the object, used to qualify the kind by its group."""

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def group(self) -> str | None:
        """Return the API group, or None for the core group."""
        if self.api_version and "/" in self.api_version:
            return self.api_version.split("/", 1)[0]
        return None

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


def resource_id(obj: dict[str, Any]) -> NamedResource:
    """Return the identity of a rendered kubernetes object."""
    if not (kind := obj.get("kind")):
        raise InputException(f"Invalid object missing kind: {obj}")
    if not (metadata := obj.get("metadata")) or not (name := metadata.get("name")):
        raise InputException(f"Invalid object missing metadata.name: {obj}")
    return NamedResource(
        kind=kind,
        namespace=metadata.get("namespace"),
        name=name,
        api_version=obj.get("apiVersion"),
    )


def _parse_duration_field(
    doc: dict[str, Any], key: str, default: float | None
) -> float | None:
    if (value := doc.get(key)) is None:
        return default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if not isinstance(value, str):
        raise InputException(f"Invalid {key} '{value}' expected a duration string")
    return parse_duration(value)


def _parse_bool_field(doc: dict[str, Any], key: str, default: bool) -> bool:
    if (value := doc.get(key)) is None:
        return default
    if not isinstance(value, bool):
        raise InputException(f"Invalid {key} '{value}' expected a boolean")
    return value


@dataclass(frozen=True)
class Unit(DataClassDictMixin):
    """A unit is a named bundle of declared resources applied to the cluster."""

    kind: ClassVar[str] = UNIT_KIND
    """The kind of the object."""

    name: str
    """The unique name of the unit."""

    source_path: str = field(metadata=field_options(alias="sourcePath"))
    """The path within the source snapshot that holds the unit's manifests."""

    target_namespace: str | None = field(
        metadata=field_options(alias="targetNamespace"), default=None
    )
    """The namespace applied to all namespaced objects of the unit."""

    depends_on: tuple[str, ...] = field(
        metadata=field_options(alias="dependsOn"), default=()
    )
    """Names of the units that must be Ready before this unit is applied."""

    prune: bool = False
    """Delete previously applied objects that are no longer rendered."""

    interval: float = DEFAULT_INTERVAL
    """Seconds between drift checks of the unit."""

    timeout: float = DEFAULT_INTERVAL
    """Seconds allowed for apply, health checks and retries of one attempt."""

    wait: bool = True
    """When false the unit is Ready as soon as the apply call succeeds."""

    suspend: bool = False
    """When true the unit is never applied."""

    path: str | None = field(metadata={"serialize": "omit"}, default=None)
    """The file in the snapshot the unit definition was read from."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any], path: str | None = None) -> "Unit":
        """Parse a Unit from the plain unit definition format."""
        if not (name := doc.get("name")) or not isinstance(name, str):
            raise InputException(f"Invalid unit missing name: {doc}")
        if not (source_path := doc.get("sourcePath")) or not isinstance(
            source_path, str
        ):
            raise InputException(f"Invalid unit {name} missing sourcePath: {doc}")
        depends_on = doc.get("dependsOn") or []
        if not isinstance(depends_on, list) or not all(
            isinstance(dep, str) and dep for dep in depends_on
        ):
            raise InputException(
                f"Invalid unit {name} dependsOn must be a list of names: {depends_on}"
            )
        interval = _parse_duration_field(doc, "interval", DEFAULT_INTERVAL)
        timeout = _parse_duration_field(doc, "timeout", interval)
        assert interval is not None and timeout is not None
        return cls(
            name=name,
            source_path=source_path,
            target_namespace=doc.get("targetNamespace"),
            depends_on=tuple(depends_on),
            prune=_parse_bool_field(doc, "prune", False),
            interval=interval,
            timeout=timeout,
            wait=_parse_bool_field(doc, "wait", True),
            suspend=_parse_bool_field(doc, "suspend", False),
            path=path,
        )

    @classmethod
    def parse_kustomization(
        cls, doc: dict[str, Any], path: str | None = None
    ) -> "Unit":
        """Parse a Unit from a flux Kustomization resource."""
        api_version = doc.get("apiVersion")
        if not isinstance(api_version, str) or not api_version.startswith(
            FLUXTOMIZE_DOMAIN
        ):
            raise InputException(
                f"Invalid object expected '{FLUXTOMIZE_DOMAIN}': {doc}"
            )
        if not (metadata := doc.get("metadata")) or not isinstance(metadata, dict):
            raise InputException(f"Invalid Kustomization missing metadata: {doc}")
        if not (name := metadata.get("name")) or not isinstance(name, str):
            raise InputException(f"Invalid Kustomization missing metadata.name: {doc}")
        namespace = metadata.get("namespace", DEFAULT_NAMESPACE)
        if not isinstance(namespace, str):
            raise InputException(
                f"Invalid Kustomization {name} metadata.namespace: {namespace}"
            )
        if not (spec := doc.get("spec")) or not isinstance(spec, dict):
            raise InputException(f"Invalid Kustomization {name} missing spec: {doc}")
        dependencies = spec.get("dependsOn") or []
        if not isinstance(dependencies, list):
            raise InputException(
                f"Invalid Kustomization {name} dependsOn must be a list: {dependencies}"
            )
        depends_on = []
        for dependency in dependencies:
            if not isinstance(dependency, dict):
                raise InputException(
                    f"Invalid Kustomization {name} dependsOn entry must be a "
                    f"mapping with a name: {dependency}"
                )
            if not (dep_name := dependency.get("name")) or not isinstance(
                dep_name, str
            ):
                raise InputException(
                    f"Invalid Kustomization missing dependsOn.name: {doc}"
                )
            dep_namespace = dependency.get("namespace", namespace)
            depends_on.append(f"{dep_namespace}/{dep_name}")
        source_path = spec.get("path") or "./"
        if not isinstance(source_path, str):
            raise InputException(f"Invalid Kustomization {name} path: {source_path}")
        interval = _parse_duration_field(spec, "interval", DEFAULT_INTERVAL)
        timeout = _parse_duration_field(spec, "timeout", interval)
        assert interval is not None and timeout is not None
        return cls(
            name=f"{namespace}/{name}",
            source_path=source_path,
            target_namespace=spec.get("targetNamespace"),
            depends_on=tuple(depends_on),
            prune=_parse_bool_field(spec, "prune", False),
            interval=interval,
            timeout=timeout,
            # Flux defaults wait to false
            wait=_parse_bool_field(spec, "wait", False),
            suspend=_parse_bool_field(spec, "suspend", False),
            path=path,
        )

    @property
    def normalized_path(self) -> str:
        """Return the source path relative to the snapshot root without `./`."""
        parts = [part for part in self.source_path.split("/") if part not in ("", ".")]
        return "/".join(parts)

    @property
    def definition_digest(self) -> str:
        """Return a hash of the definition, independent of where it was read from."""
        content = json.dumps(self.to_dict(), sort_keys=True)
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    class Config(BaseConfig):
        serialize_by_alias = True


def is_unit_doc(doc: Any) -> bool:
    """Return True if the YAML document declares a unit in either format."""
    if not isinstance(doc, dict):
        return False
    if doc.get("kind") == KUSTOMIZE_KIND and str(doc.get("apiVersion", "")).startswith(
        FLUXTOMIZE_DOMAIN
    ):
        return True
    return "kind" not in doc and "sourcePath" in doc


def parse_unit_doc(doc: dict[str, Any], path: str | None = None) -> Unit:
    """Parse a unit from a YAML document in either supported format."""
    if doc.get("kind") == KUSTOMIZE_KIND:
        return Unit.parse_kustomization(doc, path)
    return Unit.parse_doc(doc, path)


@dataclass(frozen=True)
class SourceFilter(DataClassDictMixin):
    """Glob-style include and exclude rules for the paths of a source.

    An empty include list includes every path. Exclude rules win over include
    rules. A pattern naming a directory also matches every path below it.
    """

    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()

    @staticmethod
    def _match(path: str, pattern: str) -> bool:
        pattern = pattern.strip()
        if pattern.startswith("./"):
            pattern = pattern[2:]
        pattern = pattern.lstrip("/")
        if fnmatchcase(path, pattern):
            return True
        return fnmatchcase(path, pattern.rstrip("/") + "/*")

    def matches(self, path: str) -> bool:
        """Return True if the relative posix path passes the filter."""
        if self.include and not any(self._match(path, p) for p in self.include):
            return False
        return not any(self._match(path, p) for p in self.exclude)
