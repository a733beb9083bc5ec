"""Renders a loaded overlay into a resolved manifest set.

The builder walks the layer tree depth first. Each layer starts from the
concatenated output of the layers it references, adds its own documents and
generators, applies its patches in declaration order and then runs the
transformers named in its index file (namespace, labels, annotations, images
and replicas). Once the top layer is built, references to generator names are
rewritten to the generated names.

This example renders the production overlay of a configuration tree:
```python
from overlay_apply.builder import ManifestBuilder

manifests = await ManifestBuilder(Path("deploy")).build("production")
print(manifests.yaml())
```

Building is pure: the same inputs always produce a byte-identical output.
"""

from dataclasses import replace
import logging
from pathlib import Path
from typing import Any

from .context import trace_context
from .exceptions import NotFoundError, ParseError, DuplicateResourceError
from .generator import (
    expand,
    generator_name,
    rewrite_references,
    strip_generator_annotations,
)
from .loader import Layer, ManifestLoader
from .manifest import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    SERVICE_ACCOUNT_KIND,
    GeneratorBehavior,
    GeneratorKind,
    GeneratorSpec,
    ImageOverride,
    IndexFile,
    ManifestSet,
    ResourceDocument,
)
from .patch import Patch, StrategicMergePatch, apply_patch, select_targets

__all__ = ["ManifestBuilder", "build_layer"]

_LOGGER = logging.getLogger(__name__)

# Workloads whose replica count may be overridden
SCALABLE_KINDS = {"Deployment", "StatefulSet", "ReplicaSet", "ReplicationController"}

# Workloads with a label selector that must track common labels
SELECTOR_KINDS = {"Deployment", "StatefulSet", "DaemonSet", "ReplicaSet", "Job"}


class ManifestBuilder:
    """Loads and renders overlays from a configuration tree."""

    def __init__(self, root: Path) -> None:
        self._loader = ManifestLoader(root)

    @property
    def loader(self) -> ManifestLoader:
        return self._loader

    async def build(self, overlay: str) -> ManifestSet:
        """Load and build the named overlay."""
        with trace_context(f"Build '{overlay}'"):
            layer = await self._loader.load_overlay(overlay)
            manifests = build_layer(layer)
        _LOGGER.info("Built %d resources for overlay %s", len(manifests), overlay)
        return manifests


def build_layer(layer: Layer) -> ManifestSet:
    """Build a loaded layer tree into the final manifest set."""
    manifests = _build(layer)
    manifests = rewrite_references(manifests)
    return strip_generator_annotations(manifests)


def _build(layer: Layer) -> ManifestSet:
    _LOGGER.debug("Building layer %s", layer.path)
    manifests = ManifestSet()
    for child in layer.children:
        manifests.extend(_build(child))
    for doc in layer.documents:
        manifests.add(doc)
    for spec in layer.generators:
        _apply_generator(manifests, spec)
    for patch in layer.patches:
        _apply_patch(manifests, patch)
    _apply_transformers(manifests, layer.index)
    return manifests


def _apply_generator(manifests: ManifestSet, spec: GeneratorSpec) -> None:
    kind = SECRET_KIND if spec.kind == GeneratorKind.SECRET else CONFIG_MAP_KIND
    existing = [
        doc
        for doc in manifests.find(kind=kind)
        if generator_name(doc) == spec.name
        and (spec.namespace is None or doc.namespace == spec.namespace)
    ]
    if spec.behavior == GeneratorBehavior.CREATE:
        if existing:
            raise DuplicateResourceError(
                f"{kind} generator '{spec.name}' already exists, "
                "use behavior 'merge' or 'replace'"
            )
        manifests.add(expand(spec))
        return
    if not existing:
        raise NotFoundError(
            f"{kind} generator '{spec.name}' with behavior '{spec.behavior}' "
            "has no generator of the same name to update"
        )
    if len(existing) > 1:
        raise ParseError(
            f"{kind} generator '{spec.name}' matches multiple generated resources, "
            "set a namespace"
        )
    base = existing[0]
    if spec.behavior == GeneratorBehavior.MERGE:
        doc = expand(spec, base)
    else:
        doc = expand(replace(spec, namespace=spec.namespace or base.namespace))
    _LOGGER.debug("Generator %s %s %s", spec.name, spec.behavior, base.resource_id)
    manifests.replace(doc, previous=base.resource_id)


def _apply_patch(manifests: ManifestSet, patch: Patch) -> None:
    for doc in select_targets(patch, manifests):
        if isinstance(patch, StrategicMergePatch) and patch.deletes_resource:
            _LOGGER.debug("Patch %s deletes %s", patch.source, doc.resource_id)
            manifests.remove(doc.resource_id)
            continue
        manifests.replace(apply_patch(doc, patch), previous=doc.resource_id)


def _set_map(holder: dict[str, Any], key: str, values: dict[str, str]) -> None:
    if not isinstance(holder.get(key), dict):
        holder[key] = {}
    holder[key].update(values)


def _template_metadata(contents: dict[str, Any]) -> dict[str, Any] | None:
    spec = contents.get("spec")
    if not isinstance(spec, dict) or not isinstance(spec.get("template"), dict):
        return None
    template = spec["template"]
    if not isinstance(template.get("metadata"), dict):
        template["metadata"] = {}
    return template["metadata"]  # type: ignore[no-any-return]


def _apply_labels(doc: ResourceDocument, labels: dict[str, str]) -> None:
    contents = doc.contents
    _set_map(doc.metadata, "labels", labels)
    spec = contents.get("spec")
    if doc.kind == "Service" and isinstance(spec, dict):
        _set_map(spec, "selector", labels)
    if doc.kind in SELECTOR_KINDS and isinstance(spec, dict):
        if (template_metadata := _template_metadata(contents)) is not None:
            _set_map(template_metadata, "labels", labels)
        if doc.kind != "Job":
            if not isinstance(spec.get("selector"), dict):
                spec["selector"] = {}
            _set_map(spec["selector"], "matchLabels", labels)
    elif doc.pod_spec is not None:
        if (template_metadata := _template_metadata(contents)) is not None:
            _set_map(template_metadata, "labels", labels)


def _apply_annotations(doc: ResourceDocument, annotations: dict[str, str]) -> None:
    _set_map(doc.metadata, "annotations", annotations)
    if (template_metadata := _template_metadata(doc.contents)) is not None:
        _set_map(template_metadata, "annotations", annotations)


def _split_image(image: str) -> tuple[str, str]:
    """Split an image into its name and the tag or digest suffix."""
    if "@" in image:
        name, digest = image.split("@", 1)
        return name, f"@{digest}"
    # A colon after the last slash separates the tag, others are registry ports
    slash = image.rfind("/")
    colon = image.rfind(":")
    if colon > slash:
        return image[:colon], image[colon:]
    return image, ""


def _apply_images(doc: ResourceDocument, images: list[ImageOverride]) -> None:
    if (pod_spec := doc.pod_spec) is None:
        return
    for key in ("initContainers", "containers"):
        for container in pod_spec.get(key) or []:
            if not isinstance(container, dict) or not isinstance(
                image := container.get("image"), str
            ):
                continue
            name, suffix = _split_image(image)
            for override in images:
                if override.name != name:
                    continue
                if override.digest:
                    suffix = f"@{override.digest}"
                elif override.new_tag:
                    suffix = f":{override.new_tag}"
                container["image"] = f"{override.new_name or name}{suffix}"


def _apply_namespace(doc: ResourceDocument, namespace: str, manifests: ManifestSet) -> None:
    if doc.cluster_scoped:
        return
    doc.metadata["namespace"] = namespace
    if doc.kind not in ("RoleBinding", "ClusterRoleBinding"):
        return
    # Subjects that are service accounts of this manifest set move with it
    service_accounts = {sa.name for sa in manifests.find(kind=SERVICE_ACCOUNT_KIND)}
    for subject in doc.contents.get("subjects") or []:
        if (
            isinstance(subject, dict)
            and subject.get("kind") == SERVICE_ACCOUNT_KIND
            and subject.get("name") in service_accounts
        ):
            subject["namespace"] = namespace


def _apply_transformers(manifests: ManifestSet, index: IndexFile) -> None:
    if not (
        index.namespace
        or index.common_labels
        or index.common_annotations
        or index.images
        or index.replicas
    ):
        return
    replicas = {override.name: override.count for override in index.replicas}
    for doc in manifests:
        updated = doc.copy()
        if index.namespace:
            _apply_namespace(updated, index.namespace, manifests)
        if index.common_labels:
            _apply_labels(updated, index.common_labels)
        if index.common_annotations:
            _apply_annotations(updated, index.common_annotations)
        if index.images:
            _apply_images(updated, index.images)
        if updated.kind in SCALABLE_KINDS and updated.name in replicas:
            if not isinstance(updated.contents.get("spec"), dict):
                updated.contents["spec"] = {}
            updated.contents["spec"]["replicas"] = replicas[updated.name]
        # Rebuild so that the identity reflects any namespace change
        manifests.replace(
            ResourceDocument(contents=updated.contents), previous=doc.resource_id
        )
