"""Tagged value model for loosely typed document trees.

Resource documents parsed from YAML are nested trees of mappings, sequences and
scalars. Every node in a tree is classified as exactly one `NodeKind` so that
merge and comparison rules can be written as total functions over the tag set
rather than probing arbitrary python objects.

```python
from overlay_apply.document import node_kind, NodeKind

assert node_kind({"a": 1}) == NodeKind.MAPPING
```
"""

from collections.abc import Iterable
import copy
from enum import StrEnum
import hashlib
import json
from typing import Any

import yaml

from .exceptions import ParseError

__all__ = [
    "NodeKind",
    "node_kind",
    "validate_tree",
    "clone",
    "canonical_json",
    "content_hash",
    "dump_yaml",
    "dump_yaml_all",
    "load_yaml_all",
]

Node = dict[str, Any] | list[Any] | str | int | float | bool | None


class NodeKind(StrEnum):
    """Tag for a node in a document tree."""

    SCALAR = "scalar"
    SEQUENCE = "sequence"
    MAPPING = "mapping"


def node_kind(value: Any) -> NodeKind:
    """Return the tag for a single node, rejecting unsupported types."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return NodeKind.SCALAR
    if isinstance(value, list):
        return NodeKind.SEQUENCE
    if isinstance(value, dict):
        return NodeKind.MAPPING
    raise ParseError(f"Unsupported value of type {type(value).__name__}: {value!r}")


def validate_tree(value: Any, path: str = "") -> None:
    """Check that every node in the tree is a supported kind.

    YAML may produce dates or non-string mapping keys, neither of which has a
    stable representation on the wire so both are rejected.
    """
    match node_kind(value):
        case NodeKind.MAPPING:
            for key, child in value.items():
                if not isinstance(key, str):
                    raise ParseError(
                        f"Mapping key at '{path or '/'}' must be a string: {key!r}"
                    )
                validate_tree(child, f"{path}/{key}")
        case NodeKind.SEQUENCE:
            for index, child in enumerate(value):
                validate_tree(child, f"{path}/{index}")
        case NodeKind.SCALAR:
            pass


def clone(value: Node) -> Node:
    """Return a deep copy of a tree."""
    return copy.deepcopy(value)


def canonical_json(value: Any) -> str:
    """Encode a tree as compact json with sorted keys for stable comparison."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(value: Any) -> str:
    """Return the sha256 hex digest of the canonical encoding of a tree."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


class _Loader(yaml.SafeLoader):
    """Safe loader that reads a bare `=` as a plain string.

    See https://github.com/yaml/pyyaml/issues/89
    """


_Loader.yaml_implicit_resolvers = {
    key: resolvers
    for key, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
    if key != "="
}


def load_yaml_all(content: str, source: str = "<string>") -> list[Any]:
    """Parse a multi-document yaml stream, skipping empty documents."""
    try:
        return [
            doc for doc in yaml.load_all(content, Loader=_Loader) if doc is not None
        ]
    except yaml.YAMLError as err:
        raise ParseError(f"Invalid YAML in {source}: {err}") from err


class _Dumper(yaml.SafeDumper):
    """Dumper that renders multi-line strings as block literals."""


def _str_presenter(dumper: yaml.SafeDumper, data: str) -> yaml.Node:
    """Represent multi-line yaml strings as you'd expect.

    See https://github.com/yaml/pyyaml/issues/240
    """
    return dumper.represent_scalar(
        "tag:yaml.org,2002:str", data, style="|" if data.count("\n") > 0 else None
    )


_Dumper.add_representer(str, _str_presenter)


def dump_yaml(value: Any) -> str:
    """Render a tree as yaml preserving key order."""
    return yaml.dump(value, Dumper=_Dumper, sort_keys=False)


def dump_yaml_all(values: Iterable[Any]) -> str:
    """Render a stream of trees as multi-document yaml."""
    return yaml.dump_all(
        list(values), Dumper=_Dumper, sort_keys=False, explicit_start=True
    )
