"""Cluster endpoint capability used by the planner and the applier.

The applier only depends on the `ClusterEndpoint` interface, not on any
specific transport. Credentials and the endpoint address are never parsed
here: `KubectlCluster` hands them to `kubectl` through a kubeconfig path and
context name.

This example applies a document with kubectl:
```python
from overlay_apply.cluster import KubectlCluster

cluster = KubectlCluster(context="production")
if await cluster.get(doc.resource_id) is None:
    await cluster.create(doc)
```
"""

from abc import ABC, abstractmethod
import logging
import os

from . import command
from .document import dump_yaml, load_yaml_all
from .exceptions import ClusterException, ParseError
from .manifest import ResourceDocument, ResourceId

__all__ = [
    "ClusterEndpoint",
    "InMemoryCluster",
    "KubectlCluster",
]

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"
KUBECTL_ENV = "KUBECTL"


class ClusterEndpoint(ABC):
    """A target cluster that resource documents are applied to."""

    @abstractmethod
    async def get(self, resource_id: ResourceId) -> ResourceDocument | None:
        """Return the live document, or None if the resource does not exist."""

    @abstractmethod
    async def create(self, doc: ResourceDocument) -> None:
        """Create a resource that does not exist."""

    @abstractmethod
    async def update(self, doc: ResourceDocument) -> None:
        """Replace an existing resource."""

    @abstractmethod
    async def delete(self, resource_id: ResourceId) -> None:
        """Delete an existing resource."""


class InMemoryCluster(ClusterEndpoint):
    """A cluster endpoint backed by a dictionary.

    Every call is recorded in `calls`. Failures may be injected for specific
    resources with `fail_on`.
    """

    def __init__(self, documents: list[ResourceDocument] | None = None) -> None:
        self._documents: dict[ResourceId, ResourceDocument] = {
            doc.resource_id: doc for doc in documents or []
        }
        self._failures: dict[ResourceId, str] = {}
        self.calls: list[tuple[str, ResourceId]] = []

    @property
    def documents(self) -> dict[ResourceId, ResourceDocument]:
        return dict(self._documents)

    def fail_on(self, resource_id: ResourceId, message: str = "injected failure") -> None:
        """Make every mutating call for the resource fail."""
        self._failures[resource_id] = message

    def _check(self, op: str, resource_id: ResourceId) -> None:
        self.calls.append((op, resource_id))
        if (message := self._failures.get(resource_id)) is not None:
            raise ClusterException(f"{op} {resource_id}: {message}")

    async def get(self, resource_id: ResourceId) -> ResourceDocument | None:
        self.calls.append(("get", resource_id))
        if (doc := self._documents.get(resource_id)) is None:
            return None
        return doc.copy()

    async def create(self, doc: ResourceDocument) -> None:
        self._check("create", doc.resource_id)
        if doc.resource_id in self._documents:
            raise ClusterException(f"{doc.resource_id} already exists")
        self._documents[doc.resource_id] = doc.copy()

    async def update(self, doc: ResourceDocument) -> None:
        self._check("update", doc.resource_id)
        if doc.resource_id not in self._documents:
            raise ClusterException(f"{doc.resource_id} not found")
        self._documents[doc.resource_id] = doc.copy()

    async def delete(self, resource_id: ResourceId) -> None:
        self._check("delete", resource_id)
        if self._documents.pop(resource_id, None) is None:
            raise ClusterException(f"{resource_id} not found")


class KubectlCluster(ClusterEndpoint):
    """A cluster endpoint that shells out to kubectl."""

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        kubectl: str | None = None,
    ) -> None:
        self._kubectl = kubectl or os.environ.get(KUBECTL_ENV, KUBECTL_BIN)
        self._args: list[str] = []
        if kubeconfig:
            self._args.extend(["--kubeconfig", kubeconfig])
        if context:
            self._args.extend(["--context", context])

    def _command(self, *args: str) -> command.Command:
        return command.Command([self._kubectl, *self._args, *args], exc=ClusterException)

    @staticmethod
    def _resource_args(resource_id: ResourceId) -> list[str]:
        resource_type = resource_id.kind.lower()
        if resource_id.group:
            resource_type = f"{resource_type}.{resource_id.group}"
        args = [resource_type, resource_id.name]
        if resource_id.namespace:
            args.extend(["--namespace", resource_id.namespace])
        return args

    async def get(self, resource_id: ResourceId) -> ResourceDocument | None:
        out = await command.run(
            self._command(
                "get",
                *self._resource_args(resource_id),
                "--ignore-not-found",
                "--output",
                "yaml",
            )
        )
        docs = load_yaml_all(out, f"kubectl get {resource_id}")
        if not docs:
            return None
        try:
            return ResourceDocument.parse_doc(docs[0])
        except ParseError as err:
            raise ClusterException(f"Unexpected kubectl output for {resource_id}: {err}") from err

    async def _apply_stdin(self, verb: str, doc: ResourceDocument) -> None:
        _LOGGER.debug("kubectl %s %s", verb, doc.resource_id)
        await command.run(
            self._command(verb, "--filename", "-"),
            stdin=dump_yaml(doc.contents).encode("utf-8"),
        )

    async def create(self, doc: ResourceDocument) -> None:
        await self._apply_stdin("create", doc)

    async def update(self, doc: ResourceDocument) -> None:
        await self._apply_stdin("replace", doc)

    async def delete(self, resource_id: ResourceId) -> None:
        await command.run(
            self._command(
                "delete", *self._resource_args(resource_id), "--ignore-not-found=false"
            )
        )
