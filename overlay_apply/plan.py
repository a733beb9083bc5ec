"""Computes the ordered set of changes that moves a cluster to a manifest set.

A plan compares the resolved manifest set with the previous state and emits
one `PlanStep` per resource: `Create` for new resources, `Update` for
resources whose fields changed, `Delete` for resources that are no longer
rendered and `Noop` for everything else. Fields populated by the server are
ignored when comparing.

Steps are ordered by the dependencies between documents. A namespaced
resource depends on its `Namespace`, a custom resource on its
`CustomResourceDefinition`, and a workload on the resources it refers to by
name. Creates and updates are emitted dependencies first, followed by all
deletes in the reverse order so that dependents are removed first.

This example prints the changes needed for an overlay:
```python
from overlay_apply.plan import build_plan

plan = build_plan(manifests, state.manifests)
for step in plan.changes:
    print(step.action, step.resource_id)
```
"""

import asyncio
from collections.abc import Iterable
from dataclasses import dataclass, field
import difflib
from enum import StrEnum
import logging
from typing import Any

from .cluster import ClusterEndpoint
from .config import LAST_APPLIED_ANNOTATION, PlanConfig, StateSource
from .context import trace_context
from .document import canonical_json, clone, dump_yaml
from .manifest import (
    CLUSTER_SCOPED_KINDS,
    CRD_KIND,
    NAMESPACE_KIND,
    ManifestSet,
    ResourceDocument,
    ResourceId,
    iter_name_references,
)
from .state import AppliedState

__all__ = [
    "Action",
    "PlanStep",
    "Plan",
    "build_plan",
    "create_plan",
    "dependencies",
    "normalize",
    "read_live_state",
]

_LOGGER = logging.getLogger(__name__)

# Metadata fields set by the server that never cause an update
SERVER_METADATA_FIELDS = (
    "resourceVersion",
    "uid",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
)

# Install order used to break ties between resources of the same rank
KIND_ORDER = [
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleBinding",
    "Role",
    "RoleBinding",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
]
_KIND_PRIORITY = {kind: index for index, kind in enumerate(KIND_ORDER)}


class Action(StrEnum):
    """The change a plan step makes to a resource."""

    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NOOP = "Noop"


@dataclass
class PlanStep:
    """A single change to one resource."""

    action: Action

    resource_id: ResourceId

    document: ResourceDocument | None = None
    """The desired document, absent for a delete."""

    previous: ResourceDocument | None = None
    """The previous document, absent for a create."""

    depends_on: list[ResourceId] = field(default_factory=list)
    """Steps that must succeed before this one is issued."""

    rank: int = 0
    """Length of the longest dependency chain below this step."""

    def diff(self, n: int = 3) -> list[str]:
        """Return a unified diff of the previous and desired document."""
        a = dump_yaml(self.previous.contents).splitlines() if self.previous else []
        b = dump_yaml(self.document.contents).splitlines() if self.document else []
        return list(
            difflib.unified_diff(
                a,
                b,
                fromfile=str(self.resource_id),
                tofile=str(self.resource_id),
                n=n,
                lineterm="",
            )
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": str(self.action),
            "resource": str(self.resource_id),
            "rank": self.rank,
            "depends_on": [str(dep) for dep in self.depends_on],
        }


@dataclass
class Plan:
    """An ordered list of steps."""

    steps: list[PlanStep]

    manifests: ManifestSet
    """The desired manifest set the plan converges to."""

    previous: ManifestSet = field(default_factory=ManifestSet)
    """The state the plan was computed against."""

    @property
    def changes(self) -> list[PlanStep]:
        """Steps that are issued to the cluster."""
        return [step for step in self.steps if step.action != Action.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    def summary(self) -> dict[str, int]:
        """Return the number of steps for each action."""
        counts = {str(action): 0 for action in Action}
        for step in self.steps:
            counts[str(step.action)] += 1
        return counts

    def step(self, resource_id: ResourceId) -> PlanStep | None:
        for step in self.steps:
            if step.resource_id == resource_id:
                return step
        return None

    def to_dicts(self, include_noop: bool = False) -> list[dict[str, Any]]:
        return [
            step.to_dict()
            for step in self.steps
            if include_noop or step.action != Action.NOOP
        ]


def normalize(
    contents: dict[str, Any],
    ignore_annotations: Iterable[str] = (LAST_APPLIED_ANNOTATION,),
) -> dict[str, Any]:
    """Return a copy of the document without fields populated by the server."""
    result: dict[str, Any] = clone(contents)  # type: ignore[assignment]
    result.pop("status", None)
    if isinstance(metadata := result.get("metadata"), dict):
        for key in SERVER_METADATA_FIELDS:
            metadata.pop(key, None)
        if isinstance(annotations := metadata.get("annotations"), dict):
            for annotation in ignore_annotations:
                annotations.pop(annotation, None)
            if not annotations:
                del metadata["annotations"]
    return result


def _differs(
    a: ResourceDocument, b: ResourceDocument, ignore_annotations: list[str]
) -> bool:
    return canonical_json(normalize(a.contents, ignore_annotations)) != canonical_json(
        normalize(b.contents, ignore_annotations)
    )


def _kind_priority(resource_id: ResourceId) -> int:
    return _KIND_PRIORITY.get(resource_id.kind, len(KIND_ORDER))


def _crd_index(manifests: ManifestSet) -> dict[tuple[str, str], ResourceId]:
    """Return the CRD defining each (group, kind) in the manifest set."""
    index = {}
    for crd in manifests.find(kind=CRD_KIND):
        spec = crd.contents.get("spec")
        if not isinstance(spec, dict) or not isinstance(names := spec.get("names"), dict):
            continue
        if isinstance(group := spec.get("group"), str) and isinstance(
            kind := names.get("kind"), str
        ):
            index[(group, kind)] = crd.resource_id
    return index


def dependencies(
    doc: ResourceDocument,
    manifests: ManifestSet,
    crds: dict[tuple[str, str], ResourceId] | None = None,
) -> list[ResourceId]:
    """Return the ids in the manifest set the document depends on."""
    if crds is None:
        crds = _crd_index(manifests)
    deps: list[ResourceId] = []
    if doc.namespace and not doc.cluster_scoped:
        deps.append(ResourceId("", NAMESPACE_KIND, None, doc.namespace))
    if (crd := crds.get((doc.group, doc.kind))) is not None:
        deps.append(crd)
    for ref in iter_name_references(doc):
        namespace = None
        if ref.kind not in CLUSTER_SCOPED_KINDS:
            namespace = ref.namespace or doc.namespace
        deps.append(ResourceId(ref.group, ref.kind, namespace, ref.name))
    result: list[ResourceId] = []
    for dep in deps:
        if dep in manifests and dep != doc.resource_id and dep not in result:
            result.append(dep)
    return result


def _dependency_graph(manifests: ManifestSet) -> dict[ResourceId, list[ResourceId]]:
    crds = _crd_index(manifests)
    return {doc.resource_id: dependencies(doc, manifests, crds) for doc in manifests}


def _rank(graph: dict[ResourceId, list[ResourceId]]) -> dict[ResourceId, int]:
    """Assign every node a rank above all of its dependencies.

    Edges that close a cycle are removed from the graph so that the
    remaining dependencies can always be satisfied.
    """
    ranks: dict[ResourceId, int] = {}
    visiting: list[ResourceId] = []

    def visit(node: ResourceId) -> int:
        if node in ranks:
            return ranks[node]
        visiting.append(node)
        rank = 0
        for dep in list(graph[node]):
            if dep in visiting:
                cycle = visiting[visiting.index(dep) :] + [dep]
                _LOGGER.warning(
                    "Dependency cycle %s, ordering by manifest order",
                    " -> ".join(str(item) for item in cycle),
                )
                graph[node].remove(dep)
                continue
            rank = max(rank, visit(dep) + 1)
        visiting.pop()
        ranks[node] = rank
        return rank

    for node in graph:
        visit(node)
    return ranks


def build_plan(
    manifests: ManifestSet,
    previous: ManifestSet,
    config: PlanConfig | None = None,
) -> Plan:
    """Compute the plan that converges the previous state to the manifest set."""
    config = config or PlanConfig()
    with trace_context("Plan"):
        graph = _dependency_graph(manifests)
        ranks = _rank(graph)
        order = {resource_id: index for index, resource_id in enumerate(graph)}
        upserts: list[PlanStep] = []
        for doc in manifests:
            resource_id = doc.resource_id
            if (prior := previous.get(resource_id)) is None:
                action = Action.CREATE
            elif _differs(doc, prior, config.ignore_annotations):
                action = Action.UPDATE
            else:
                action = Action.NOOP
            _LOGGER.debug("%s %s", action, resource_id)
            upserts.append(
                PlanStep(
                    action=action,
                    resource_id=resource_id,
                    document=doc,
                    previous=prior,
                    depends_on=graph[resource_id],
                    rank=ranks[resource_id],
                )
            )
        upserts.sort(
            key=lambda step: (
                step.rank,
                _kind_priority(step.resource_id),
                order[step.resource_id],
            )
        )

        removed = ManifestSet(
            [doc for doc in previous if doc.resource_id not in manifests]
        )
        removed_graph = _dependency_graph(removed)
        removed_ranks = _rank(removed_graph)
        removed_order = {
            resource_id: index for index, resource_id in enumerate(removed_graph)
        }
        deletes = [
            PlanStep(
                action=Action.DELETE,
                resource_id=doc.resource_id,
                previous=doc,
                depends_on=[
                    dependent
                    for dependent, deps in removed_graph.items()
                    if doc.resource_id in deps
                ],
                rank=removed_ranks[doc.resource_id],
            )
            for doc in removed
        ]
        deletes.sort(
            key=lambda step: (
                -step.rank,
                -_kind_priority(step.resource_id),
                removed_order[step.resource_id],
            )
        )
        for step in deletes:
            _LOGGER.debug("%s %s", step.action, step.resource_id)

    plan = Plan(steps=upserts + deletes, manifests=manifests, previous=previous)
    _LOGGER.info(
        "Plan: %s",
        ", ".join(f"{count} {action}" for action, count in plan.summary().items()),
    )
    return plan


def _as_requested(resource_id: ResourceId, doc: ResourceDocument) -> ResourceDocument:
    """Return the live document under the identity it was requested by.

    The server fills in `metadata.namespace` for documents that omit it.
    """
    if doc.resource_id == resource_id:
        return doc
    _LOGGER.debug("Live document %s read as %s", doc.resource_id, resource_id)
    contents = clone(doc.contents)
    metadata = contents["metadata"]
    if resource_id.namespace is None:
        metadata.pop("namespace", None)
    else:
        metadata["namespace"] = resource_id.namespace
    return ResourceDocument(contents=contents)


async def read_live_state(
    cluster: ClusterEndpoint, manifests: ManifestSet, state: AppliedState
) -> AppliedState:
    """Read every resource of the manifest set or applied state from the cluster.

    The result has the key and generation of the applied state and holds
    only the resources that exist.
    """
    ids = manifests.ids()
    ids.extend(
        resource_id for resource_id in state.manifests.ids() if resource_id not in manifests
    )
    with trace_context("Read live state"):
        live = await asyncio.gather(*(cluster.get(resource_id) for resource_id in ids))
    documents = [
        _as_requested(resource_id, doc)
        for resource_id, doc in zip(ids, live)
        if doc is not None
    ]
    _LOGGER.info("Read %d of %d resources from the cluster", len(documents), len(ids))
    return AppliedState.from_manifests(
        state.key, ManifestSet(documents), generation=state.generation
    )


async def create_plan(
    manifests: ManifestSet,
    state: AppliedState,
    config: PlanConfig | None = None,
    cluster: ClusterEndpoint | None = None,
) -> Plan:
    """Compute a plan against the configured state source."""
    config = config or PlanConfig()
    if config.state_source == StateSource.LIVE:
        if cluster is None:
            raise ValueError("A cluster endpoint is required to plan against live state")
        state = await read_live_state(cluster, manifests, state)
    return build_plan(manifests, state.manifests, config)
