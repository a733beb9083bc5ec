"""Library for flags shared by the overlay-apply commands."""

from argparse import ArgumentParser
import logging
import pathlib

from overlay_apply.cluster import ClusterEndpoint, KubectlCluster
from overlay_apply.config import (
    DEFAULT_CLUSTER_NAME,
    BuildConfig,
    PlanConfig,
    StateConfig,
    StateSource,
)
from overlay_apply.state import FileStateStore

_LOGGER = logging.getLogger(__name__)

OUTPUT_FORMATS = ["text", "yaml", "json"]


def add_overlay_flags(args: ArgumentParser) -> None:
    """Add the overlay and configuration tree flags."""
    args.add_argument(
        "overlay",
        help="Name of the overlay under <path>/overlays/, or a directory "
        "relative to <path> holding an index file",
    )
    args.add_argument(
        "--path",
        help="Root of the configuration tree with base/ and overlays/ directories",
        type=pathlib.Path,
        default=pathlib.Path("."),
    )


def add_state_flags(args: ArgumentParser) -> None:
    """Add flags that select where the applied state lives."""
    args.add_argument(
        "--state-dir",
        help="Directory holding the applied state, defaults to "
        "$OVERLAY_APPLY_STATE_DIR or .overlay-apply",
        type=pathlib.Path,
        default=None,
    )
    args.add_argument(
        "--state-source",
        choices=[str(source) for source in StateSource],
        default=str(StateSource.APPLIED),
        help="Compare against the last applied state or the live cluster",
    )
    args.add_argument(
        "--cluster-name",
        default=DEFAULT_CLUSTER_NAME,
        help="Name of the target cluster, used to key the applied state",
    )


def add_cluster_flags(args: ArgumentParser) -> None:
    """Add flags passed through to kubectl."""
    args.add_argument(
        "--kubeconfig",
        help="Path to the kubeconfig file used by kubectl",
        default=None,
    )
    args.add_argument(
        "--context",
        help="The kubeconfig context used by kubectl",
        default=None,
    )


def add_output_flags(args: ArgumentParser) -> None:
    args.add_argument(
        "--output",
        "-o",
        choices=OUTPUT_FORMATS,
        default="text",
        help="Output format of the command",
    )


def build_config(path: pathlib.Path) -> BuildConfig:
    return BuildConfig(path=path)


def plan_config(state_source: str) -> PlanConfig:
    return PlanConfig(state_source=StateSource(state_source))


def state_config(state_dir: pathlib.Path | None, cluster_name: str) -> StateConfig:
    config = StateConfig(cluster_name=cluster_name)
    if state_dir is not None:
        config.state_dir = state_dir
    return config


def state_store(config: StateConfig) -> FileStateStore:
    _LOGGER.debug("Using state directory %s", config.state_dir)
    return FileStateStore(config)


def cluster(kubeconfig: str | None, context: str | None) -> ClusterEndpoint:
    return KubectlCluster(kubeconfig=kubeconfig, context=context)
