"""Library for expanding ConfigMap and Secret generators.

A generator turns an ordered list of `key=value` literals into a concrete
resource document. The generated name carries a suffix derived from a hash of
the content so that any change to a key or value produces a new resource
identity, which in turn forces workloads that reference it to roll out:

```python
from overlay_apply.generator import expand
from overlay_apply.manifest import GeneratorSpec

doc = expand(GeneratorSpec(name="app-config", literals=["LOG_LEVEL=debug"]))
print(doc.name)  # app-config-<hash>
```

Workloads should reference the plain generator name; `rewrite_references`
replaces those references with the generated name.
"""

import base64
from collections.abc import Iterable
import logging
from typing import Any

from .document import canonical_json, content_hash
from .exceptions import ParseError
from .manifest import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    GeneratorKind,
    GeneratorOptions,
    GeneratorSpec,
    ManifestSet,
    ResourceDocument,
    iter_name_references,
)

__all__ = [
    "GENERATOR_NAME_ANNOTATION",
    "name_hash",
    "generator_data",
    "expand",
    "expand_generators",
    "generator_name",
    "rewrite_references",
    "strip_generator_annotations",
]

_LOGGER = logging.getLogger(__name__)

# Records the plain generator name while building, removed from final output
GENERATOR_NAME_ANNOTATION = "internal.config.kubernetes.io/generatorName"

DEFAULT_SECRET_TYPE = "Opaque"
HASH_LENGTH = 10

# Substitutions that avoid generating suffixes that read as words or numbers
_HASH_ENCODING = str.maketrans({"0": "g", "1": "h", "3": "k", "a": "m", "e": "t"})


def name_hash(kind: str, name: str, data: dict[str, str], type: str | None = None) -> str:
    """Return the content hash suffix for generated data.

    The data keys are sorted before hashing so that declaration order of the
    literals does not matter.
    """
    content: dict[str, Any] = {"kind": kind, "name": name, "data": data}
    if kind == SECRET_KIND:
        content["type"] = type or DEFAULT_SECRET_TYPE
    _LOGGER.debug("Hashing generator content %s", canonical_json(content))
    return content_hash(content)[:HASH_LENGTH].translate(_HASH_ENCODING)


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def _parse_literal(literal: str, source: str) -> tuple[str, str]:
    if not isinstance(literal, str) or "=" not in literal:
        raise ParseError(f"Invalid literal in generator {source}, expected key=value: {literal!r}")
    key, value = literal.split("=", 1)
    if not key:
        raise ParseError(f"Invalid literal in generator {source}, empty key: {literal!r}")
    return key, _unquote(value)


def generator_data(spec: GeneratorSpec) -> dict[str, str]:
    """Return the data of a generator, sorted by key.

    Secret values are base64 encoded as they appear in the `data` field.
    """
    data: dict[str, str] = {}
    entries = [_parse_literal(literal, spec.name) for literal in spec.literals]
    entries.extend(spec.file_data.items())
    for key, value in entries:
        if key in data:
            raise ParseError(f"Duplicate key '{key}' in generator {spec.name}")
        data[key] = value
    if spec.kind == GeneratorKind.SECRET:
        data = {
            key: base64.b64encode(value.encode("utf-8")).decode("ascii")
            for key, value in data.items()
        }
    return dict(sorted(data.items()))


def _build(
    kind: str,
    name: str,
    namespace: str | None,
    data: dict[str, str],
    options: GeneratorOptions,
    secret_type: str | None,
) -> ResourceDocument:
    generated_name = name
    if not options.disable_name_suffix_hash:
        generated_name = f"{name}-{name_hash(kind, name, data, secret_type)}"
    metadata: dict[str, Any] = {"name": generated_name}
    if namespace:
        metadata["namespace"] = namespace
    if options.labels:
        metadata["labels"] = dict(sorted(options.labels.items()))
    metadata["annotations"] = {
        **dict(sorted((options.annotations or {}).items())),
        GENERATOR_NAME_ANNOTATION: name,
    }
    contents: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": kind,
        "metadata": metadata,
    }
    if kind == SECRET_KIND:
        contents["type"] = secret_type or DEFAULT_SECRET_TYPE
    contents["data"] = data
    return ResourceDocument(contents=contents)


def _user_annotations(doc: ResourceDocument) -> dict[str, str]:
    return {
        key: value
        for key, value in (doc.metadata.get("annotations") or {}).items()
        if key != GENERATOR_NAME_ANNOTATION
    }


def expand(spec: GeneratorSpec, base: ResourceDocument | None = None) -> ResourceDocument:
    """Expand a single generator into a resource document.

    When a base document is given (an overlay generator with `merge`
    behavior), the data, labels and annotations of the base are kept and the
    generator's values layered on top.
    """
    kind = SECRET_KIND if spec.kind == GeneratorKind.SECRET else CONFIG_MAP_KIND
    data = generator_data(spec)
    options = spec.options or GeneratorOptions()
    namespace = spec.namespace
    secret_type = spec.type
    if base is not None:
        data = dict(sorted({**base.contents.get("data", {}), **data}.items()))
        options = GeneratorOptions(
            labels=base.metadata.get("labels"),
            annotations=_user_annotations(base) or None,
            disable_name_suffix_hash=(
                base.name == base.metadata["annotations"][GENERATOR_NAME_ANNOTATION]
            ),
        ).merge(spec.options)
        namespace = namespace or base.namespace
        secret_type = secret_type or base.contents.get("type")
    doc = _build(kind, spec.name, namespace, data, options, secret_type)
    _LOGGER.debug("Generated %s from generator %s", doc.resource_id, spec.name)
    return doc


def expand_generators(specs: Iterable[GeneratorSpec]) -> list[ResourceDocument]:
    """Expand generators into resource documents in declaration order."""
    return [expand(spec) for spec in specs]


def generator_name(doc: ResourceDocument) -> str | None:
    """Return the plain generator name of a generated document."""
    return (doc.metadata.get("annotations") or {}).get(GENERATOR_NAME_ANNOTATION)


def rewrite_references(manifests: ManifestSet) -> ManifestSet:
    """Point references to plain generator names at the generated names.

    A reference is rewritten when a generated document of the same kind and
    namespace was produced from a generator with the referenced name.
    """
    generated: dict[tuple[str, str | None, str], str] = {}
    for doc in manifests:
        if (name := generator_name(doc)) is not None:
            generated[(doc.kind, doc.namespace, name)] = doc.name

    result = ManifestSet()
    for doc in manifests:
        updated = doc.copy()
        changed = False
        for ref in iter_name_references(updated):
            if ref.kind not in (CONFIG_MAP_KIND, SECRET_KIND):
                continue
            key = (ref.kind, ref.namespace or doc.namespace, ref.name)
            if (new_name := generated.get(key)) is not None and new_name != ref.name:
                _LOGGER.debug(
                    "Rewriting %s reference %s to %s in %s",
                    ref.kind,
                    ref.name,
                    new_name,
                    doc.resource_id,
                )
                ref.rename(new_name)
                changed = True
        result.add(updated if changed else doc)
    return result


def strip_generator_annotations(manifests: ManifestSet) -> ManifestSet:
    """Remove the internal generator annotations from the final output."""
    result = ManifestSet()
    for doc in manifests:
        if generator_name(doc) is None:
            result.add(doc)
            continue
        updated = doc.copy()
        annotations = updated.metadata["annotations"]
        del annotations[GENERATOR_NAME_ANNOTATION]
        if not annotations:
            del updated.metadata["annotations"]
        result.add(updated)
    return result
