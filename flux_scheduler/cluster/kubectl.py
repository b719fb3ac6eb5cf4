"""Cluster implementation that issues kubectl commands."""

import json
import logging
from typing import Any

import yaml

from flux_scheduler.command import Command, run
from flux_scheduler.exceptions import KubectlException
from flux_scheduler.manifest import NamedResource

from .cluster import Cluster

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"
FIELD_MANAGER = "flux-scheduler"


class KubectlCluster(Cluster):
    """Applies and reads objects with `kubectl`."""

    def __init__(
        self,
        context: str | None = None,
        kubeconfig: str | None = None,
        timeout: float = 120.0,
        kubectl_bin: str = KUBECTL_BIN,
    ) -> None:
        """Initialize the KubectlCluster.

        Args:
            context: Optional kubeconfig context to use.
            kubeconfig: Optional path to a kubeconfig file.
            timeout: Seconds to wait for each kubectl command.
            kubectl_bin: The kubectl binary to run.
        """
        self._flags: list[str] = []
        if context:
            self._flags.extend(["--context", context])
        if kubeconfig:
            self._flags.extend(["--kubeconfig", kubeconfig])
        self._timeout = timeout
        self._kubectl_bin = kubectl_bin

    def _command(self, args: list[str]) -> Command:
        return Command(
            [self._kubectl_bin, *self._flags, *args],
            exc=KubectlException,
            timeout=self._timeout,
        )

    @staticmethod
    def _target(resource_id: NamedResource) -> list[str]:
        kind = resource_id.kind.lower()
        if group := resource_id.group:
            # Kinds like Kustomization exist in more than one group
            kind = f"{kind}.{group}"
        args = [kind, resource_id.name]
        if resource_id.namespace:
            args.extend(["--namespace", resource_id.namespace])
        return args

    async def apply(self, objects: list[dict[str, Any]]) -> None:
        """Apply the objects with a server side apply."""
        if not objects:
            return
        content = yaml.dump_all(objects, sort_keys=False, explicit_start=True)
        cmd = self._command(
            [
                "apply",
                "--server-side",
                "--force-conflicts",
                f"--field-manager={FIELD_MANAGER}",
                "-f",
                "-",
            ]
        )
        out = await run(cmd, stdin=content.encode("utf-8"))
        _LOGGER.debug("kubectl apply: %s", out.strip())

    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return the live object, or None if it does not exist."""
        cmd = self._command(
            ["get", *self._target(resource_id), "--ignore-not-found", "-o", "json"]
        )
        out = await run(cmd)
        if not out.strip():
            return None
        try:
            obj: dict[str, Any] = json.loads(out)
        except json.JSONDecodeError as err:
            raise KubectlException(
                f"Unable to parse kubectl output for {resource_id}: {err}"
            ) from err
        return obj

    async def delete(self, resource_id: NamedResource) -> None:
        """Delete the object, without waiting for finalizers."""
        cmd = self._command(
            ["delete", *self._target(resource_id), "--ignore-not-found", "--wait=false"]
        )
        await run(cmd)
        _LOGGER.info("Deleted %s", resource_id)
