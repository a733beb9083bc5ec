"""Representation of resource documents and overlay index files.

A resolved manifest set is an ordered collection of `ResourceDocument` objects,
each identified by a `ResourceId` of (group, kind, namespace, name). Index files
(`kustomization.yaml`) describe how a directory contributes to a manifest set
and are parsed into `IndexFile` objects.
"""

from collections.abc import Iterator, Generator
from dataclasses import dataclass, field, replace
from enum import StrEnum
import logging
from typing import Any

from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .document import clone, dump_yaml_all, validate_tree
from .exceptions import DuplicateResourceError, ParseError

__all__ = [
    "ResourceId",
    "ResourceDocument",
    "ManifestSet",
    "NameReference",
    "iter_name_references",
    "GeneratorKind",
    "GeneratorBehavior",
    "GeneratorOptions",
    "GeneratorSpec",
    "PatchTarget",
    "PatchEntry",
    "ImageOverride",
    "ReplicaOverride",
    "IndexFile",
    "INDEX_FILENAMES",
]

_LOGGER = logging.getLogger(__name__)


INDEX_FILENAMES = ("kustomization.yaml", "kustomization.yml", "Kustomization")

CONFIG_MAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"
NAMESPACE_KIND = "Namespace"
CRD_KIND = "CustomResourceDefinition"
SERVICE_ACCOUNT_KIND = "ServiceAccount"
PVC_KIND = "PersistentVolumeClaim"
SERVICE_KIND = "Service"
RBAC_GROUP = "rbac.authorization.k8s.io"

# Kinds that never carry a namespace
CLUSTER_SCOPED_KINDS = {
    NAMESPACE_KIND,
    CRD_KIND,
    "ClusterRole",
    "ClusterRoleBinding",
    "PersistentVolume",
    "StorageClass",
    "PriorityClass",
    "IngressClass",
    "RuntimeClass",
    "CSIDriver",
    "APIService",
    "MutatingWebhookConfiguration",
    "ValidatingWebhookConfiguration",
    "Node",
}

# Workload kinds and the path to their pod spec
POD_SPEC_PATHS: dict[str, tuple[str, ...]] = {
    "Pod": ("spec",),
    "Deployment": ("spec", "template", "spec"),
    "StatefulSet": ("spec", "template", "spec"),
    "DaemonSet": ("spec", "template", "spec"),
    "ReplicaSet": ("spec", "template", "spec"),
    "ReplicationController": ("spec", "template", "spec"),
    "Job": ("spec", "template", "spec"),
    "CronJob": ("spec", "jobTemplate", "spec", "template", "spec"),
}


def split_api_version(api_version: str) -> tuple[str, str]:
    """Return the (group, version) of an apiVersion string."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


@dataclass(frozen=True)
class ResourceId:
    """Identifier for a resource document."""

    group: str
    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @property
    def group_kind(self) -> str:
        if self.group:
            return f"{self.kind}.{self.group}"
        return self.kind

    @property
    def sort_key(self) -> tuple[str, str, str, str]:
        return (self.group, self.kind, self.namespace or "", self.name)

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.group_kind}/{self.namespaced_name}"


@dataclass
class ResourceDocument:
    """A single declarative resource document.

    The contents are the full tree of fields as parsed from yaml. Documents are
    treated as immutable values: transformations return new documents.
    """

    contents: dict[str, Any]

    def __post_init__(self) -> None:
        self.resource_id = self._parse_id(self.contents)

    @staticmethod
    def _parse_id(doc: dict[str, Any]) -> ResourceId:
        if not isinstance(doc, dict):
            raise ParseError(f"Invalid document, expected a mapping: {doc!r}")
        if not (api_version := doc.get("apiVersion")) or not isinstance(
            api_version, str
        ):
            raise ParseError(f"Invalid object missing apiVersion: {doc}")
        if not (kind := doc.get("kind")) or not isinstance(kind, str):
            raise ParseError(f"Invalid object missing kind: {doc}")
        if not isinstance(metadata := doc.get("metadata"), dict):
            raise ParseError(f"Invalid object missing metadata: {doc}")
        if not (name := metadata.get("name")) or not isinstance(name, str):
            raise ParseError(f"Invalid object missing metadata.name: {doc}")
        namespace = metadata.get("namespace")
        if namespace is not None and not isinstance(namespace, str):
            raise ParseError(f"Invalid object metadata.namespace: {doc}")
        group, _ = split_api_version(api_version)
        return ResourceId(group=group, kind=kind, namespace=namespace, name=name)

    @classmethod
    def parse_doc(cls, doc: Any) -> "ResourceDocument":
        """Parse a ResourceDocument from a raw yaml document."""
        if not isinstance(doc, dict):
            raise ParseError(f"Invalid document, expected a mapping: {doc!r}")
        validate_tree(doc)
        return cls(contents=doc)

    @property
    def api_version(self) -> str:
        return str(self.contents["apiVersion"])

    @property
    def group(self) -> str:
        return self.resource_id.group

    @property
    def kind(self) -> str:
        return self.resource_id.kind

    @property
    def name(self) -> str:
        return self.resource_id.name

    @property
    def namespace(self) -> str | None:
        return self.resource_id.namespace

    @property
    def metadata(self) -> dict[str, Any]:
        return self.contents["metadata"]  # type: ignore[no-any-return]

    @property
    def cluster_scoped(self) -> bool:
        return self.kind in CLUSTER_SCOPED_KINDS

    @property
    def pod_spec(self) -> dict[str, Any] | None:
        """Return the pod spec of a workload, if this document has one."""
        if not (path := POD_SPEC_PATHS.get(self.kind)):
            return None
        node: Any = self.contents
        for key in path:
            if not isinstance(node, dict) or not isinstance(node.get(key), dict):
                return None
            node = node[key]
        return node  # type: ignore[no-any-return]

    def copy(self) -> "ResourceDocument":
        """Return a deep copy of the document."""
        return ResourceDocument(contents=clone(self.contents))  # type: ignore[arg-type]


class ManifestSet:
    """An ordered set of resource documents with unique identities."""

    def __init__(self, documents: list[ResourceDocument] | None = None) -> None:
        self._documents: dict[ResourceId, ResourceDocument] = {}
        for doc in documents or []:
            self.add(doc)

    def add(self, doc: ResourceDocument) -> None:
        """Add a document, failing if one with the same identity exists."""
        if doc.resource_id in self._documents:
            raise DuplicateResourceError(
                f"Duplicate resource in manifest set: {doc.resource_id}"
            )
        self._documents[doc.resource_id] = doc

    def replace(self, doc: ResourceDocument, previous: ResourceId | None = None) -> None:
        """Replace a document in place, keeping its position in the set.

        The identity may change (e.g. a namespace transform) as long as the
        new identity does not collide with another document.
        """
        previous = previous or doc.resource_id
        if previous not in self._documents:
            raise KeyError(previous)
        if doc.resource_id != previous and doc.resource_id in self._documents:
            raise DuplicateResourceError(
                f"Duplicate resource in manifest set: {doc.resource_id}"
            )
        self._documents = {
            (doc.resource_id if key == previous else key): (
                doc if key == previous else value
            )
            for key, value in self._documents.items()
        }

    def remove(self, resource_id: ResourceId) -> ResourceDocument:
        return self._documents.pop(resource_id)

    def get(self, resource_id: ResourceId) -> ResourceDocument | None:
        return self._documents.get(resource_id)

    def extend(self, other: "ManifestSet") -> None:
        for doc in other:
            self.add(doc)

    def ids(self) -> list[ResourceId]:
        return list(self._documents)

    def find(
        self,
        kind: str | None = None,
        name: str | None = None,
        namespace: str | None = None,
        group: str | None = None,
    ) -> list[ResourceDocument]:
        """Return documents matching all of the specified fields."""
        return [
            doc
            for doc in self._documents.values()
            if (kind is None or doc.kind == kind)
            and (name is None or doc.name == name)
            and (namespace is None or doc.namespace == namespace)
            and (group is None or doc.group == group)
        ]

    def __contains__(self, resource_id: object) -> bool:
        return resource_id in self._documents

    def __iter__(self) -> Iterator[ResourceDocument]:
        return iter(list(self._documents.values()))

    def __len__(self) -> int:
        return len(self._documents)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ManifestSet):
            return NotImplemented
        return list(self._documents.items()) == list(other._documents.items())

    def __repr__(self) -> str:
        return f"ManifestSet({[str(key) for key in self._documents]})"

    def yaml(self) -> str:
        """Render the manifest set as a multi-document yaml stream."""
        return dump_yaml_all(doc.contents for doc in self._documents.values())


@dataclass
class NameReference:
    """A field within a document that refers to another resource by name."""

    group: str
    kind: str
    holder: dict[str, Any]
    key: str
    namespace: str | None = None

    @property
    def name(self) -> str:
        return str(self.holder[self.key])

    def rename(self, name: str) -> None:
        self.holder[self.key] = name


def _dicts(value: Any) -> Generator[dict[str, Any], None, None]:
    """Yield the mapping items of a sequence, ignoring anything else."""
    if isinstance(value, list):
        for item in value:
            if isinstance(item, dict):
                yield item


def _child(node: Any, *keys: str) -> dict[str, Any] | None:
    for key in keys:
        if not isinstance(node, dict) or not isinstance(node.get(key), dict):
            return None
        node = node[key]
    return node  # type: ignore[no-any-return]


def _ref(
    kind: str,
    holder: dict[str, Any] | None,
    key: str,
    group: str = "",
    namespace: str | None = None,
) -> Generator[NameReference, None, None]:
    if holder is not None and isinstance(holder.get(key), str):
        yield NameReference(
            group=group, kind=kind, holder=holder, key=key, namespace=namespace
        )


def _pod_spec_references(spec: dict[str, Any]) -> Generator[NameReference, None, None]:
    containers = [
        *_dicts(spec.get("initContainers")),
        *_dicts(spec.get("containers")),
        *_dicts(spec.get("ephemeralContainers")),
    ]
    for container in containers:
        for env_from in _dicts(container.get("envFrom")):
            yield from _ref(CONFIG_MAP_KIND, _child(env_from, "configMapRef"), "name")
            yield from _ref(SECRET_KIND, _child(env_from, "secretRef"), "name")
        for env in _dicts(container.get("env")):
            value_from = _child(env, "valueFrom")
            yield from _ref(CONFIG_MAP_KIND, _child(value_from, "configMapKeyRef"), "name")
            yield from _ref(SECRET_KIND, _child(value_from, "secretKeyRef"), "name")
    for volume in _dicts(spec.get("volumes")):
        yield from _ref(CONFIG_MAP_KIND, _child(volume, "configMap"), "name")
        yield from _ref(SECRET_KIND, _child(volume, "secret"), "secretName")
        yield from _ref(PVC_KIND, _child(volume, "persistentVolumeClaim"), "claimName")
        for source in _dicts((_child(volume, "projected") or {}).get("sources")):
            yield from _ref(CONFIG_MAP_KIND, _child(source, "configMap"), "name")
            yield from _ref(SECRET_KIND, _child(source, "secret"), "name")
    for pull_secret in _dicts(spec.get("imagePullSecrets")):
        yield from _ref(SECRET_KIND, pull_secret, "name")
    yield from _ref(SERVICE_ACCOUNT_KIND, spec, "serviceAccountName")


def iter_name_references(doc: ResourceDocument) -> Generator[NameReference, None, None]:
    """Yield every field of the document that refers to another resource.

    References are yielded as handles into the document contents so callers
    may rewrite them in place on a copy of the document.
    """
    if (pod_spec := doc.pod_spec) is not None:
        yield from _pod_spec_references(pod_spec)
    contents = doc.contents
    if doc.kind in ("RoleBinding", "ClusterRoleBinding") and doc.group == RBAC_GROUP:
        if (role_ref := _child(contents, "roleRef")) and isinstance(
            kind := role_ref.get("kind"), str
        ):
            yield from _ref(kind, role_ref, "name", group=RBAC_GROUP)
        for subject in _dicts(contents.get("subjects")):
            if subject.get("kind") == SERVICE_ACCOUNT_KIND:
                yield from _ref(
                    SERVICE_ACCOUNT_KIND,
                    subject,
                    "name",
                    namespace=subject.get("namespace"),
                )
    if doc.kind == "Ingress":
        spec = _child(contents, "spec") or {}
        yield from _ref(SERVICE_KIND, _child(spec, "defaultBackend", "service"), "name")
        for rule in _dicts(spec.get("rules")):
            for path in _dicts((_child(rule, "http") or {}).get("paths")):
                yield from _ref(SERVICE_KIND, _child(path, "backend", "service"), "name")
        for tls in _dicts(spec.get("tls")):
            yield from _ref(SECRET_KIND, tls, "secretName")
    if doc.kind == "HorizontalPodAutoscaler":
        if (target := _child(contents, "spec", "scaleTargetRef")) and isinstance(
            kind := target.get("kind"), str
        ):
            group, _ = split_api_version(str(target.get("apiVersion", "")))
            yield from _ref(kind, target, "name", group=group)


class GeneratorKind(StrEnum):
    """Type of resource produced by a generator."""

    CONFIG = "config"
    SECRET = "secret"


class GeneratorBehavior(StrEnum):
    """How a generator combines with a generator of the same name in a base."""

    CREATE = "create"
    MERGE = "merge"
    REPLACE = "replace"


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all index file objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class GeneratorOptions(BaseManifest):
    """Options applied to generated resources."""

    labels: dict[str, str] | None = None
    """Labels added to the generated resource."""

    annotations: dict[str, str] | None = None
    """Annotations added to the generated resource."""

    disable_name_suffix_hash: bool = field(
        metadata=field_options(alias="disableNameSuffixHash"), default=False
    )
    """Keep the plain generator name without a content hash suffix."""

    def merge(self, other: "GeneratorOptions | None") -> "GeneratorOptions":
        """Return options with the other options layered on top."""
        if other is None:
            return self
        return GeneratorOptions(
            labels={**(self.labels or {}), **(other.labels or {})} or None,
            annotations={**(self.annotations or {}), **(other.annotations or {})}
            or None,
            disable_name_suffix_hash=(
                self.disable_name_suffix_hash or other.disable_name_suffix_hash
            ),
        )


@dataclass
class GeneratorSpec(BaseManifest):
    """A ConfigMap or Secret generator directive."""

    name: str
    """The name of the generated resource, before the hash suffix."""

    kind: GeneratorKind = GeneratorKind.CONFIG
    """Whether a ConfigMap or a Secret is generated."""

    namespace: str | None = None
    """The namespace of the generated resource."""

    behavior: GeneratorBehavior = GeneratorBehavior.CREATE
    """How to combine with a generator of the same name from a base."""

    literals: list[str] = field(default_factory=list)
    """Ordered list of `key=value` literals."""

    files: list[str] = field(default_factory=list)
    """Files whose content becomes a value, as `path` or `key=path`."""

    envs: list[str] = field(default_factory=list)
    """Env files of `key=value` lines."""

    file_data: dict[str, str] = field(default_factory=dict)
    """Contents of resolved `files` sources by key, used verbatim."""

    type: str | None = None
    """The type of a generated Secret."""

    options: GeneratorOptions | None = None
    """Per-generator options."""


@dataclass
class PatchTarget(BaseManifest):
    """Selects the resources a patch applies to."""

    group: str | None = None
    version: str | None = None
    kind: str | None = None
    name: str | None = None
    namespace: str | None = None

    def matches(self, resource_id: ResourceId) -> bool:
        """Return True if the resource matches every field that is set."""
        return (
            (self.group is None or self.group == resource_id.group)
            and (self.kind is None or self.kind == resource_id.kind)
            and (self.name is None or self.name == resource_id.name)
            and (self.namespace is None or self.namespace == resource_id.namespace)
        )

    def __str__(self) -> str:
        return ", ".join(
            f"{key}={value}" for key, value in self.to_dict().items() if value
        )


@dataclass
class PatchEntry(BaseManifest):
    """A patch reference from an index file, either a file path or inline."""

    path: str | None = None
    """Path to a patch file relative to the index file."""

    patch: str | None = None
    """Inline patch content."""

    target: PatchTarget | None = None
    """Resources the patch applies to."""

    def __post_init__(self) -> None:
        if (self.path is None) == (self.patch is None):
            raise ParseError("Patch must specify exactly one of 'path' or 'patch'")


@dataclass
class ImageOverride(BaseManifest):
    """Replaces the name, tag or digest of matching container images."""

    name: str
    """The image name to match, without tag or digest."""

    new_name: str | None = field(metadata=field_options(alias="newName"), default=None)
    new_tag: str | None = field(metadata=field_options(alias="newTag"), default=None)
    digest: str | None = None


@dataclass
class ReplicaOverride(BaseManifest):
    """Sets the replica count of a named workload."""

    name: str
    count: int


@dataclass
class IndexFile(BaseManifest):
    """The index file of a base or overlay directory."""

    api_version: str | None = field(
        metadata=field_options(alias="apiVersion"), default=None
    )
    kind: str | None = None

    resources: list[str] = field(default_factory=list)
    """Resource files and directories (bases or other overlays)."""

    bases: list[str] = field(default_factory=list)
    """Deprecated list of base directories, treated like directory resources."""

    patches: list[PatchEntry] = field(default_factory=list)
    """Strategic merge or field operation patches, applied in order."""

    patches_strategic_merge: list[str] = field(
        metadata=field_options(alias="patchesStrategicMerge"), default_factory=list
    )
    """Strategic merge patch files or inline fragments."""

    patches_json6902: list[PatchEntry] = field(
        metadata=field_options(alias="patchesJson6902"), default_factory=list
    )
    """Field operation patches with an explicit target."""

    config_map_generator: list[GeneratorSpec] = field(
        metadata=field_options(alias="configMapGenerator"), default_factory=list
    )
    secret_generator: list[GeneratorSpec] = field(
        metadata=field_options(alias="secretGenerator"), default_factory=list
    )
    generator_options: GeneratorOptions | None = field(
        metadata=field_options(alias="generatorOptions"), default=None
    )

    namespace: str | None = None
    """Namespace set on every namespaced resource."""

    common_labels: dict[str, str] | None = field(
        metadata=field_options(alias="commonLabels"), default=None
    )
    common_annotations: dict[str, str] | None = field(
        metadata=field_options(alias="commonAnnotations"), default=None
    )

    images: list[ImageOverride] = field(default_factory=list)
    """Container image overrides."""

    replicas: list[ReplicaOverride] = field(default_factory=list)
    """Replica count overrides."""

    @classmethod
    def parse_doc(cls, doc: Any) -> "IndexFile":
        """Parse an index file from a raw yaml document."""
        if doc is None:
            return cls()
        if not isinstance(doc, dict):
            raise ParseError(f"Index file must be a mapping: {doc!r}")
        try:
            return cls.from_dict(doc)
        except (InvalidFieldValue, MissingField) as err:
            raise ParseError(f"Invalid index file: {err}") from err

    @property
    def generators(self) -> list[GeneratorSpec]:
        """All generators with their kind set and index options applied."""
        specs = [
            replace(spec, kind=GeneratorKind.CONFIG) for spec in self.config_map_generator
        ] + [replace(spec, kind=GeneratorKind.SECRET) for spec in self.secret_generator]
        if self.generator_options is None:
            return specs
        return [
            replace(spec, options=self.generator_options.merge(spec.options))
            for spec in specs
        ]
