"""Library for applying overlay patches to resource documents.

Two styles of patch are supported, matching the overlay model:

- A strategic merge patch is a partial resource document. Scalars in the patch
  overwrite scalars in the base, mappings merge key by key, and sequences are
  replaced in full. An explicit `null` removes a key.
- A field operation patch is an ordered list of `add`, `replace`, `remove`,
  `move`, `copy` and `test` operations addressed by JSON pointer paths.

```python
from overlay_apply import patch

result = patch.apply_patches(deployment, [
    patch.StrategicMergePatch({"spec": {"replicas": 3}}),
])
```

Patches never mutate their inputs and always produce the same output for the
same inputs.
"""

from dataclasses import dataclass, replace
from enum import StrEnum
import logging
from typing import Any

from .document import NodeKind, clone, node_kind, validate_tree
from .exceptions import NotFoundError, ParseError, PatchTargetMissing
from .generator import generator_name
from .manifest import (
    ManifestSet,
    PatchTarget,
    ResourceDocument,
    split_api_version,
)

__all__ = [
    "PatchOp",
    "FieldOperation",
    "StrategicMergePatch",
    "JsonPatch",
    "Patch",
    "strategic_merge",
    "apply_operations",
    "apply_patch",
    "apply_patches",
    "select_targets",
    "parse_patch",
]

_LOGGER = logging.getLogger(__name__)

# Directive key in a strategic merge fragment
PATCH_DIRECTIVE = "$patch"
DIRECTIVE_DELETE = "delete"
DIRECTIVE_REPLACE = "replace"


class PatchOp(StrEnum):
    """A field operation."""

    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"
    MOVE = "move"
    COPY = "copy"
    TEST = "test"


@dataclass(frozen=True)
class FieldOperation:
    """A single targeted field operation."""

    op: PatchOp
    path: str
    value: Any = None
    from_path: str | None = None

    @classmethod
    def parse_doc(cls, doc: Any) -> "FieldOperation":
        """Parse a field operation from a raw yaml document."""
        if not isinstance(doc, dict):
            raise ParseError(f"Patch operation must be a mapping: {doc!r}")
        try:
            op = PatchOp(doc.get("op"))
        except ValueError as err:
            raise ParseError(f"Invalid patch operation: {doc}") from err
        if not isinstance(path := doc.get("path"), str):
            raise ParseError(f"Patch operation missing path: {doc}")
        if op in (PatchOp.ADD, PatchOp.REPLACE, PatchOp.TEST) and "value" not in doc:
            raise ParseError(f"Patch operation '{op}' missing value: {doc}")
        from_path = doc.get("from")
        if op in (PatchOp.MOVE, PatchOp.COPY) and not isinstance(from_path, str):
            raise ParseError(f"Patch operation '{op}' missing from: {doc}")
        value = doc.get("value")
        validate_tree(value)
        return cls(op=op, path=path, value=value, from_path=from_path)


@dataclass
class StrategicMergePatch:
    """A partial resource document merged onto its target."""

    fragment: dict[str, Any]
    """The partial document."""

    target: PatchTarget | None = None
    """Explicit target, otherwise the identity of the fragment is used."""

    source: str = "<inline>"
    """Where the patch was declared, for error messages."""

    @property
    def deletes_resource(self) -> bool:
        """True if the fragment removes the whole target resource."""
        return self.fragment.get(PATCH_DIRECTIVE) == DIRECTIVE_DELETE

    def default_target(self) -> PatchTarget:
        """Return the target selected by the identity fields of the fragment."""
        if self.target is not None:
            return self.target
        metadata = self.fragment.get("metadata")
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise ParseError(
                f"Strategic merge patch {self.source} missing metadata.name"
            )
        if not (kind := self.fragment.get("kind")):
            raise ParseError(f"Strategic merge patch {self.source} missing kind")
        group = None
        if api_version := self.fragment.get("apiVersion"):
            group, _ = split_api_version(str(api_version))
        return PatchTarget(
            group=group,
            kind=kind,
            name=metadata["name"],
            namespace=metadata.get("namespace"),
        )

    def merge_fragment(self) -> dict[str, Any]:
        """Return the fragment to merge, without identity fields if targeted."""
        if self.target is None:
            return self.fragment
        fragment = dict(self.fragment)
        fragment.pop("apiVersion", None)
        fragment.pop("kind", None)
        if isinstance(metadata := fragment.get("metadata"), dict):
            metadata = {
                key: value
                for key, value in metadata.items()
                if key not in ("name", "namespace")
            }
            if metadata:
                fragment["metadata"] = metadata
            else:
                del fragment["metadata"]
        return fragment


@dataclass
class JsonPatch:
    """An ordered list of field operations applied to each target."""

    operations: list[FieldOperation]
    target: PatchTarget
    source: str = "<inline>"


Patch = StrategicMergePatch | JsonPatch


def parse_patch(
    content: Any, target: PatchTarget | None = None, source: str = "<inline>"
) -> Patch:
    """Parse a patch document, detecting its style from the document shape."""
    match node_kind(content):
        case NodeKind.SEQUENCE:
            if target is None:
                raise ParseError(f"Field operation patch {source} requires a target")
            return JsonPatch(
                operations=[FieldOperation.parse_doc(op) for op in content],
                target=target,
                source=source,
            )
        case NodeKind.MAPPING:
            validate_tree(content)
            return StrategicMergePatch(fragment=content, target=target, source=source)
        case NodeKind.SCALAR:
            raise ParseError(f"Patch {source} must be a mapping or a list: {content!r}")
    raise AssertionError("unreachable")


def strategic_merge(base: Any, patch: Any) -> Any:
    """Merge a patch tree onto a base tree, returning a new tree."""
    if node_kind(patch) != NodeKind.MAPPING:
        # Scalars overwrite and sequences are replaced wholesale
        return clone(patch)
    if node_kind(base) != NodeKind.MAPPING:
        base = {}
    if patch.get(PATCH_DIRECTIVE) == DIRECTIVE_REPLACE:
        return strategic_merge(
            {}, {k: v for k, v in patch.items() if k != PATCH_DIRECTIVE}
        )
    result = dict(base)
    for key, value in patch.items():
        if key == PATCH_DIRECTIVE:
            continue
        if value is None or (
            isinstance(value, dict) and value.get(PATCH_DIRECTIVE) == DIRECTIVE_DELETE
        ):
            result.pop(key, None)
            continue
        result[key] = strategic_merge(result.get(key), value)
    # Keys untouched by the patch are shared with the base, copy them
    return {
        key: (value if key in patch else clone(value)) for key, value in result.items()
    }


def _parse_pointer(path: str) -> list[str]:
    """Split a JSON pointer into unescaped reference tokens."""
    if path == "":
        return []
    if not path.startswith("/"):
        raise ParseError(f"Invalid patch path, must start with '/': {path}")
    return [
        token.replace("~1", "/").replace("~0", "~") for token in path[1:].split("/")
    ]


def _index(container: list[Any], token: str, op: str, path: str, append: bool) -> int:
    if append and token == "-":
        return len(container)
    if not token.isdigit():
        raise PatchTargetMissing(op, path, f"has invalid list index '{token}'")
    index = int(token)
    limit = len(container) if append else len(container) - 1
    if index > limit:
        raise PatchTargetMissing(op, path)
    return index


def _walk(tree: Any, tokens: list[str], op: str, path: str) -> Any:
    """Return the node addressed by the tokens, which must exist."""
    node = tree
    for token in tokens:
        match node_kind(node):
            case NodeKind.MAPPING:
                if token not in node:
                    raise PatchTargetMissing(op, path)
                node = node[token]
            case NodeKind.SEQUENCE:
                node = node[_index(node, token, op, path, append=False)]
            case NodeKind.SCALAR:
                raise PatchTargetMissing(op, path)
    return node


def _get(tree: Any, path: str, op: str) -> Any:
    return _walk(tree, _parse_pointer(path), op, path)


def _remove(tree: Any, path: str, op: str) -> Any:
    tokens = _parse_pointer(path)
    if not tokens:
        raise PatchTargetMissing(op, path, "cannot remove the document root")
    parent = _walk(tree, tokens[:-1], op, path)
    match node_kind(parent):
        case NodeKind.MAPPING:
            if tokens[-1] not in parent:
                raise PatchTargetMissing(op, path)
            return parent.pop(tokens[-1])
        case NodeKind.SEQUENCE:
            return parent.pop(_index(parent, tokens[-1], op, path, append=False))
    raise PatchTargetMissing(op, path)


def _set(tree: Any, path: str, value: Any, op: str, must_exist: bool) -> Any:
    """Add or replace the value at path, returning the (possibly new) root."""
    tokens = _parse_pointer(path)
    if not tokens:
        return value
    parent = _walk(tree, tokens[:-1], op, path)
    token = tokens[-1]
    match node_kind(parent):
        case NodeKind.MAPPING:
            if must_exist and token not in parent:
                raise PatchTargetMissing(op, path)
            parent[token] = value
        case NodeKind.SEQUENCE:
            if must_exist:
                parent[_index(parent, token, op, path, append=False)] = value
            else:
                parent.insert(_index(parent, token, op, path, append=True), value)
        case NodeKind.SCALAR:
            raise PatchTargetMissing(op, path)
    return tree


def apply_operations(tree: Any, operations: list[FieldOperation]) -> Any:
    """Apply field operations in order to a copy of the tree."""
    result = clone(tree)
    for operation in operations:
        op = operation.op
        match op:
            case PatchOp.ADD:
                result = _set(
                    result, operation.path, clone(operation.value), op, must_exist=False
                )
            case PatchOp.REPLACE:
                result = _set(
                    result, operation.path, clone(operation.value), op, must_exist=True
                )
            case PatchOp.REMOVE:
                _remove(result, operation.path, op)
            case PatchOp.MOVE:
                value = _remove(result, operation.from_path or "", op)
                result = _set(result, operation.path, value, op, must_exist=False)
            case PatchOp.COPY:
                value = clone(_get(result, operation.from_path or "", op))
                result = _set(result, operation.path, value, op, must_exist=False)
            case PatchOp.TEST:
                if _get(result, operation.path, op) != operation.value:
                    raise PatchTargetMissing(
                        op, operation.path, f"does not equal {operation.value!r}"
                    )
    return result


def apply_patch(doc: ResourceDocument, patch: Patch) -> ResourceDocument:
    """Apply a single patch to a document, returning a new document."""
    if isinstance(patch, StrategicMergePatch):
        contents = strategic_merge(doc.contents, patch.merge_fragment())
        # The fragment may name a generated resource by its generator name
        if isinstance(metadata := contents.get("metadata"), dict):
            metadata["name"] = doc.name
    else:
        contents = apply_operations(doc.contents, patch.operations)
    try:
        return ResourceDocument.parse_doc(contents)
    except ParseError as err:
        raise ParseError(
            f"Patch {patch.source} produced an invalid document for "
            f"{doc.resource_id}: {err}"
        ) from err


def apply_patches(doc: ResourceDocument, patches: list[Patch]) -> ResourceDocument:
    """Apply patches in declaration order, later patches win on conflicts."""
    for patch in patches:
        _LOGGER.debug("Applying patch %s to %s", patch.source, doc.resource_id)
        doc = apply_patch(doc, patch)
    return doc


def _matches(target: PatchTarget, doc: ResourceDocument) -> bool:
    """Match the resource id, or the plain name of a generated resource."""
    if target.matches(doc.resource_id):
        return True
    if (name := generator_name(doc)) is None:
        return False
    return target.matches(replace(doc.resource_id, name=name))


def select_targets(patch: Patch, manifests: ManifestSet) -> list[ResourceDocument]:
    """Return the documents a patch applies to, failing if there are none."""
    if isinstance(patch, StrategicMergePatch):
        target = patch.default_target()
    else:
        target = patch.target
    matches = [doc for doc in manifests if _matches(target, doc)]
    if not matches:
        raise NotFoundError(
            f"Patch {patch.source} target not found in manifest set: {target}"
        )
    return matches
