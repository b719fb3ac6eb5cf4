"""Flags and object construction shared by the command line actions."""

from argparse import ArgumentParser
import logging
import pathlib
from typing import Any

from flux_scheduler.cluster import Cluster, InMemoryCluster, KubectlCluster
from flux_scheduler.config import OrchestratorConfig, load_config
from flux_scheduler.decrypt import Decryptor, NoopDecryptor, SopsDecryptor
from flux_scheduler.exceptions import InputException
from flux_scheduler.health import HealthEvaluator
from flux_scheduler.manifest import SourceFilter
from flux_scheduler.orchestrator import Orchestrator
from flux_scheduler.source_controller import (
    GitRef,
    GitSource,
    LocalSource,
    Source,
    SourceWatcher,
)
from flux_scheduler.store import InMemoryStore, read_state

_LOGGER = logging.getLogger(__name__)

CLUSTER_DRY_RUN = "dry-run"
CLUSTER_KUBECTL = "kubectl"
OUTPUT_CHOICES = ["table", "yaml", "json"]


def add_source_flags(args: ArgumentParser) -> None:
    """Add flags selecting the source and its filter."""
    args.add_argument(
        "--path",
        help="Local directory holding the unit definitions and manifests",
        type=pathlib.Path,
        default=None,
    )
    args.add_argument(
        "--url",
        help="URL of a git repository to use as the source instead of --path",
        type=str,
        default=None,
    )
    args.add_argument(
        "--ref",
        help="Branch of the git repository to check out",
        type=str,
        default=None,
    )
    args.add_argument(
        "--include",
        help="Glob of source paths to include, may be repeated",
        action="append",
        default=[],
    )
    args.add_argument(
        "--exclude",
        help="Glob of source paths to exclude, may be repeated",
        action="append",
        default=[],
    )
    args.add_argument(
        "--config",
        help="YAML file with scheduler configuration",
        type=pathlib.Path,
        default=None,
    )


def add_cluster_flags(args: ArgumentParser) -> None:
    """Add flags selecting the cluster units are applied to."""
    args.add_argument(
        "--cluster",
        choices=[CLUSTER_DRY_RUN, CLUSTER_KUBECTL],
        default=CLUSTER_DRY_RUN,
        help="Apply to an in memory cluster or to the current kubectl context",
    )
    args.add_argument(
        "--kube-context",
        type=str,
        default=None,
        help="Kubeconfig context to use with --cluster kubectl",
    )
    args.add_argument(
        "--sops",
        action="store_true",
        default=False,
        help="Decrypt sops encrypted Secrets before apply",
    )
    add_state_flags(args)


def add_state_flags(args: ArgumentParser) -> None:
    """Add the flag for the file Apply Records are persisted to."""
    args.add_argument(
        "--state-file",
        type=pathlib.Path,
        default=None,
        help="YAML file the Apply Records are read from and written to",
    )


def add_output_flags(args: ArgumentParser) -> None:
    """Add the output format flag."""
    args.add_argument(
        "--output",
        "-o",
        choices=OUTPUT_CHOICES,
        default="table",
        help="Output format of the command",
    )


def build_source(path: pathlib.Path | None, url: str | None, ref: str | None) -> Source:
    """Return the source selected by the flags."""
    if url and path:
        raise InputException("Only one of --path and --url may be specified")
    if url:
        return GitSource(url, GitRef(branch=ref))
    if ref:
        raise InputException("Flag --ref requires --url")
    return LocalSource(path or pathlib.Path("."))


def build_config(config: pathlib.Path | None) -> OrchestratorConfig:
    """Return the configuration from the --config file or the defaults."""
    if config is None:
        return OrchestratorConfig()
    return load_config(config)


async def build_orchestrator(
    path: pathlib.Path | None = None,
    url: str | None = None,
    ref: str | None = None,
    include: list[str] | None = None,
    exclude: list[str] | None = None,
    config: pathlib.Path | None = None,
    cluster: str = CLUSTER_DRY_RUN,
    kube_context: str | None = None,
    sops: bool = False,
    state_file: pathlib.Path | None = None,
    **kwargs: Any,  # pylint: disable=unused-argument
) -> Orchestrator:
    """Create an Orchestrator from the command line flags."""
    orchestrator_config = build_config(config)
    watcher = SourceWatcher(
        build_source(path, url, ref),
        SourceFilter(include=tuple(include or ()), exclude=tuple(exclude or ())),
    )
    target: Cluster
    if cluster == CLUSTER_KUBECTL:
        target = KubectlCluster(context=kube_context)
        health = HealthEvaluator(target, orchestrator_config.health)
    else:
        target = InMemoryCluster()
        # Nothing reports status in memory
        health = HealthEvaluator(target, orchestrator_config.health, assume_ready=True)
    decryptor: Decryptor = SopsDecryptor() if sops else NoopDecryptor()

    store = InMemoryStore()
    if state_file is not None:
        state = await read_state(state_file)
        _LOGGER.debug("Loaded %d records from %s", len(state.units), state_file)
        store = InMemoryStore(state.units)
    return Orchestrator(
        watcher,
        target,
        store=store,
        config=orchestrator_config,
        decryptor=decryptor,
        health=health,
        state_file=state_file,
    )
