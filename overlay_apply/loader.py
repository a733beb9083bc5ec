"""Manifest loader for base and overlay directories.

This module provides the ManifestLoader which reads a tree of directories that
each hold an index file (`kustomization.yaml`). An index file lists resource
files, generators and patches, and may reference other directories (a base or
another overlay) through its `resources` list.

Key Characteristics:
- Loads each directory into a `Layer` holding its documents, generators,
  patches and referenced child layers
- Detects reference cycles before anything is built or patched
- Resolves generator `files` and `envs` sources into literals
- Stateless: nothing is merged or patched here, see `builder`

The conventional layout is:

```
<root>/base/kustomization.yaml
<root>/overlays/<name>/kustomization.yaml
```
"""

from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
from typing import Any

import aiofiles
from aiofiles.ospath import isdir, isfile

from .document import load_yaml_all
from .exceptions import CycleError, NotFoundError, ParseError
from .manifest import (
    INDEX_FILENAMES,
    GeneratorSpec,
    IndexFile,
    PatchEntry,
    ResourceDocument,
)
from .patch import Patch, parse_patch

__all__ = ["ManifestLoader", "Layer", "OVERLAYS_DIR"]

_LOGGER = logging.getLogger(__name__)

OVERLAYS_DIR = "overlays"


@dataclass
class Layer:
    """A loaded base or overlay directory."""

    path: Path
    """Absolute path to the directory."""

    index: IndexFile
    """The parsed index file."""

    documents: list[ResourceDocument] = field(default_factory=list)
    """Resource documents from the files listed in `resources`."""

    generators: list[GeneratorSpec] = field(default_factory=list)
    """Generators with file and env sources resolved into literals."""

    patches: list[Patch] = field(default_factory=list)
    """Patches in the order they are applied."""

    children: list["Layer"] = field(default_factory=list)
    """Referenced base or overlay directories, in declaration order."""

    @property
    def all_documents(self) -> list[ResourceDocument]:
        """Documents of this layer and every referenced layer, depth first."""
        return [
            *(doc for child in self.children for doc in child.all_documents),
            *self.documents,
        ]


async def _read_text(path: Path) -> str:
    try:
        async with aiofiles.open(str(path), encoding="utf-8") as file:
            return await file.read()
    except FileNotFoundError as err:
        raise NotFoundError(f"File not found: {path}") from err
    except (OSError, UnicodeDecodeError) as err:
        raise ParseError(f"Failed to read file {path}: {err}") from err


class ManifestLoader:
    """Loads base and overlay directories from the filesystem."""

    def __init__(self, root: Path) -> None:
        """Initialize the loader with the root of the configuration tree."""
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    async def load_overlay(self, overlay: str) -> Layer:
        """Load a named overlay from `<root>/overlays/<name>`.

        A path to any directory with an index file is also accepted, relative
        to the root.
        """
        path = self._root / OVERLAYS_DIR / overlay
        if not await isdir(path):
            path = self._root / overlay
        if not await isdir(path):
            raise NotFoundError(f"Overlay '{overlay}' not found under {self._root}")
        return await self.load(path)

    async def load(self, path: Path) -> Layer:
        """Load the directory and everything it references."""
        _LOGGER.info("Loading overlay from %s", path)
        layer = await self._load_layer(Path(path).resolve(), [])
        _LOGGER.info("Finished loading %s", path)
        return layer

    def _label(self, path: Path) -> str:
        if path.is_relative_to(self._root):
            return str(path.relative_to(self._root)) or "."
        return str(path)

    async def _find_index(self, path: Path) -> Path:
        for filename in INDEX_FILENAMES:
            if await isfile(index_path := path / filename):
                return index_path
        raise NotFoundError(f"No index file ({', '.join(INDEX_FILENAMES)}) in {path}")

    async def _load_layer(self, path: Path, stack: list[Path]) -> Layer:
        if path in stack:
            cycle = stack[stack.index(path) :] + [path]
            raise CycleError([self._label(p) for p in cycle])
        if not await isdir(path):
            raise NotFoundError(f"Directory not found: {path}")

        index_path = await self._find_index(path)
        _LOGGER.debug("Processing index file: %s", index_path)
        docs = load_yaml_all(await _read_text(index_path), str(index_path))
        if len(docs) > 1:
            raise ParseError(f"Index file must hold a single document: {index_path}")
        index = IndexFile.parse_doc(docs[0] if docs else None)

        layer = Layer(path=path, index=index)
        # Resolve references first so that cycles fail before patches are read
        for entry in [*index.bases, *index.resources]:
            if "://" in entry:
                raise ParseError(f"Remote resources are not supported: {entry}")
            entry_path = (path / entry).resolve()
            if await isdir(entry_path):
                layer.children.append(
                    await self._load_layer(entry_path, [*stack, path])
                )
            elif await isfile(entry_path):
                layer.documents.extend(await self._load_documents(entry_path))
            else:
                raise NotFoundError(
                    f"Resource '{entry}' in {index_path} not found: {entry_path}"
                )

        for spec in index.generators:
            layer.generators.append(await self._resolve_generator(spec, path))

        for entry_str in index.patches_strategic_merge:
            layer.patches.extend(await self._load_strategic_merge(entry_str, path))
        for entry in index.patches_json6902:
            if entry.target is None:
                raise ParseError(f"patchesJson6902 entry requires a target in {index_path}")
            layer.patches.extend(await self._load_patch_entry(entry, path))
        for entry in index.patches:
            layer.patches.extend(await self._load_patch_entry(entry, path))

        _LOGGER.debug(
            "Loaded %s: %d documents, %d generators, %d patches, %d references",
            self._label(path),
            len(layer.documents),
            len(layer.generators),
            len(layer.patches),
            len(layer.children),
        )
        return layer

    async def _load_documents(self, path: Path) -> list[ResourceDocument]:
        _LOGGER.debug("Loading resource file: %s", path)
        results = []
        for doc in load_yaml_all(await _read_text(path), str(path)):
            try:
                results.append(ResourceDocument.parse_doc(doc))
            except ParseError as err:
                raise ParseError(f"Invalid document in {path}: {err}") from err
        return results

    async def _load_strategic_merge(self, entry: str, path: Path) -> list[Patch]:
        """Load a patchesStrategicMerge entry, either a file or inline yaml."""
        if "\n" in entry:
            return [
                parse_patch(doc, source=f"{self._label(path)} (inline)")
                for doc in load_yaml_all(entry, self._label(path))
            ]
        patch_path = (path / entry).resolve()
        source = self._label(patch_path)
        return [
            parse_patch(doc, source=source)
            for doc in load_yaml_all(await _read_text(patch_path), source)
        ]

    async def _load_patch_entry(self, entry: PatchEntry, path: Path) -> list[Patch]:
        if entry.path is not None:
            patch_path = (path / entry.path).resolve()
            source = self._label(patch_path)
            content = await _read_text(patch_path)
        else:
            source = f"{self._label(path)} (inline)"
            content = entry.patch or ""
        docs: list[Any] = load_yaml_all(content, source)
        if not docs:
            raise ParseError(f"Patch {source} is empty")
        return [parse_patch(doc, target=entry.target, source=source) for doc in docs]

    async def _resolve_generator(self, spec: GeneratorSpec, path: Path) -> GeneratorSpec:
        """Read file sources and turn env sources into literals."""
        literals = list(spec.literals)
        file_data = dict(spec.file_data)
        for entry in spec.files:
            key, _, file_path = entry.rpartition("=")
            source_path = (path / file_path).resolve()
            key = key or source_path.name
            if key in file_data:
                raise ParseError(f"Duplicate key '{key}' in generator {spec.name}")
            file_data[key] = await _read_text(source_path)
        for entry in spec.envs:
            env_path = (path / entry).resolve()
            for line in (await _read_text(env_path)).splitlines():
                if not (line := line.strip()) or line.startswith("#"):
                    continue
                if "=" not in line:
                    raise ParseError(f"Invalid line in env file {env_path}: {line}")
                literals.append(line)
        return replace(spec, literals=literals, file_data=file_data, files=[], envs=[])
