"""Library for rendering the declared resources of a unit.

A unit whose source path contains a `kustomization.yaml` is rendered with
`kustomize build`. Otherwise every YAML manifest below the path is read
as is, which matches how flux generates a kustomization for plain
directories. In both cases the target namespace of the unit is then set on
every namespaced object.

```python
from flux_scheduler.kustomize import Renderer

objects = await Renderer().render(unit, snapshot)
for obj in objects:
    print(f"Found object {obj['apiVersion']} {obj['kind']}")
```
"""

import asyncio
import logging
from pathlib import Path
import tempfile
from typing import Any

import yaml

from .command import Command, run
from .context import trace_context
from .exceptions import InputException, KustomizeException
from .manifest import Unit, is_unit_doc
from .source_controller import Snapshot

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "Renderer",
    "update_namespace",
]

KUSTOMIZE_BIN = "kustomize"
KUSTOMIZATION_FILES = ("kustomization.yaml", "kustomization.yml", "Kustomization")
MANIFEST_SUFFIXES = (".yaml", ".yml")

CLUSTER_SCOPED_KINDS = frozenset(
    {
        "Namespace",
        "ClusterRole",
        "ClusterRoleBinding",
        "CustomResourceDefinition",
        "PersistentVolume",
        "StorageClass",
        "PriorityClass",
        "ValidatingWebhookConfiguration",
        "MutatingWebhookConfiguration",
        "APIService",
    }
)


def update_namespace(doc: dict[str, Any], namespace: str) -> dict[str, Any]:
    """Update the namespace of the specified document.

    Will only update the namespace if the doc appears to have a metadata/name
    and is not of a cluster scoped kind.
    """
    if doc.get("kind") in CLUSTER_SCOPED_KINDS:
        return doc
    if (metadata := doc.get("metadata")) is not None and "name" in metadata:
        doc["metadata"]["namespace"] = namespace
    return doc


def _parse_objects(content: str | bytes, origin: str) -> list[dict[str, Any]]:
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse YAML in {origin}: {err}") from err
    objects = []
    for doc in docs:
        if doc is None or (is_unit_doc(doc) and "kind" not in doc):
            continue
        if not isinstance(doc, dict) or not doc.get("kind"):
            raise InputException(f"Invalid object in {origin} missing kind: {doc}")
        if not isinstance(metadata := doc.get("metadata"), dict) or not metadata.get(
            "name"
        ):
            raise InputException(
                f"Invalid object in {origin} missing metadata.name: {doc}"
            )
        objects.append(doc)
    return objects


class Renderer:
    """Renders the objects of a unit from a snapshot."""

    def __init__(self, kustomize_bin: str = KUSTOMIZE_BIN) -> None:
        """Initialize the Renderer."""
        self._kustomize_bin = kustomize_bin

    async def render(self, unit: Unit, snapshot: Snapshot) -> list[dict[str, Any]]:
        """Render the objects of the unit at the snapshot.

        Raises:
            InputException: If the source path is missing or a manifest is invalid.
            KustomizeException: If `kustomize build` failed.
        """
        prefix = unit.normalized_path
        paths = snapshot.list_dir(prefix)
        if not paths:
            raise InputException(
                f"Unit '{unit.name}' sourcePath '{unit.source_path}' "
                f"has no files in {snapshot.revision}"
            )
        with trace_context(f"render {unit.name}"):
            if any(
                f"{prefix}/{name}".lstrip("/") in snapshot.files
                for name in KUSTOMIZATION_FILES
            ):
                objects = await self._kustomize_build(prefix, snapshot)
            else:
                objects = []
                for path in paths:
                    if path.endswith(MANIFEST_SUFFIXES):
                        objects.extend(_parse_objects(snapshot.read(path), path))
        if unit.target_namespace:
            objects = [update_namespace(obj, unit.target_namespace) for obj in objects]
        _LOGGER.debug("Rendered %d objects for unit %s", len(objects), unit.name)
        return objects

    async def _kustomize_build(
        self, prefix: str, snapshot: Snapshot
    ) -> list[dict[str, Any]]:
        with tempfile.TemporaryDirectory(prefix="flux-scheduler-") as tmp_dir:
            root = await asyncio.to_thread(snapshot.checkout, Path(tmp_dir))
            cmd = Command(
                [self._kustomize_bin, "build", "."],
                cwd=root / prefix,
                exc=KustomizeException,
            )
            out = await run(cmd)
        try:
            return _parse_objects(out, f"kustomize build {prefix or '.'}")
        except InputException as err:
            raise KustomizeException(str(err)) from err
