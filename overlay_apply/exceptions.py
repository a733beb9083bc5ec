"""Exceptions related to overlay-apply."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .manifest import ResourceId

__all__ = [
    "OverlayException",
    "InputException",
    "NotFoundError",
    "ParseError",
    "DuplicateResourceError",
    "CycleError",
    "PatchTargetMissing",
    "CommandException",
    "ClusterException",
    "StateException",
    "ApplyFailure",
    "ApplyError",
    "ApplyCancelled",
]


class OverlayException(Exception):
    """Generic base exception used for this library."""


class InputException(OverlayException):
    """Raised when the input files or values are not formatted as expected."""


class NotFoundError(InputException):
    """Raised when a base, overlay, resource file or patch target does not exist."""


class ParseError(InputException):
    """Raised when a document or index file is malformed."""


class DuplicateResourceError(ParseError):
    """Raised when two documents in a manifest set share the same identity."""


class CycleError(InputException):
    """Raised when overlay references form a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(f"Overlay reference cycle: {' -> '.join(cycle)}")
        self.cycle = cycle


class PatchTargetMissing(InputException):
    """Raised when a field operation addresses a path absent in the document."""

    def __init__(self, op: str, path: str, message: str | None = None) -> None:
        super().__init__(
            f"Patch operation '{op}' target path '{path}' "
            f"{message or 'does not exist'}"
        )
        self.op = op
        self.path = path


class CommandException(OverlayException):
    """Raised when there is a failure running a subcommand."""


class ClusterException(CommandException):
    """Raised when the cluster endpoint rejects an operation."""


class StateException(OverlayException):
    """Raised when the applied state cannot be read, written or locked."""


class ApplyFailure(OverlayException):
    """Raised when a single plan step failed against the cluster endpoint."""

    def __init__(self, resource_id: "ResourceId", action: str, cause: Any) -> None:
        super().__init__(f"{action} {resource_id} failed: {cause}")
        self.resource_id = resource_id
        self.action = action
        self.cause = cause


class ApplyError(OverlayException):
    """Raised with every failure aggregated from a best-effort apply."""

    def __init__(self, failures: list[ApplyFailure]) -> None:
        details = "\n".join(f"  - {failure}" for failure in failures)
        super().__init__(f"{len(failures)} step(s) failed:\n{details}")
        self.failures = failures


class ApplyCancelled(OverlayException):
    """Raised when an apply was cancelled between steps."""

    def __init__(self, applied: list["ResourceId"]) -> None:
        super().__init__(
            f"Apply cancelled after {len(applied)} applied step(s): "
            f"{[str(resource_id) for resource_id in applied]}"
        )
        self.applied = applied
