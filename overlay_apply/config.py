"""Configuration objects for overlay-apply."""

from dataclasses import dataclass, field
from enum import StrEnum
import os
from pathlib import Path

STATE_DIR_ENV = "OVERLAY_APPLY_STATE_DIR"
DEFAULT_STATE_DIR = ".overlay-apply"
DEFAULT_CLUSTER_NAME = "default"
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"


class StateSource(StrEnum):
    """Where the previous state is read from when planning."""

    APPLIED = "applied"
    """The last successfully applied state persisted by this tool."""

    LIVE = "live"
    """The live resources read back from the cluster endpoint."""


class ApplyPolicy(StrEnum):
    """How the applier reacts to a failed step."""

    STOP_ON_FIRST_ERROR = "stop-on-first-error"
    BEST_EFFORT = "best-effort"


@dataclass
class BuildConfig:
    """Configuration for rendering an overlay."""

    path: Path = field(default_factory=Path.cwd)
    """Root of the configuration tree holding `base/` and `overlays/`."""


@dataclass
class PlanConfig:
    """Configuration for building a plan."""

    state_source: StateSource = StateSource.APPLIED

    ignore_annotations: list[str] = field(
        default_factory=lambda: [LAST_APPLIED_ANNOTATION]
    )
    """Annotations populated by the server that never cause an update."""


@dataclass
class ApplierConfig:
    """Configuration for the Applier."""

    policy: ApplyPolicy = ApplyPolicy.STOP_ON_FIRST_ERROR

    concurrency: int = 1
    """Maximum number of steps issued at once, 1 applies strictly in order."""

    dry_run: bool = False

    timeout: float | None = None
    """Seconds after which no further steps are issued."""

    rollback_on_failure: bool = False
    """Revert the applied steps when a stop-on-first-error apply fails."""

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1: {self.concurrency}")


def _default_state_dir() -> Path:
    return Path(os.environ.get(STATE_DIR_ENV, DEFAULT_STATE_DIR))


@dataclass
class StateConfig:
    """Configuration for persisting the applied state."""

    state_dir: Path = field(default_factory=_default_state_dir)

    cluster_name: str = DEFAULT_CLUSTER_NAME
    """Prefix of the state key, separates state of different clusters."""

    lock_timeout: float = 30.0
    """Seconds to wait for the state lock held by another invocation."""
