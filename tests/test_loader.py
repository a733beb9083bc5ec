"""Tests for the manifest loader."""

from collections.abc import Callable
from pathlib import Path

import pytest

from overlay_apply.exceptions import CycleError, NotFoundError, ParseError
from overlay_apply.generator import generator_data
from overlay_apply.loader import ManifestLoader
from overlay_apply.patch import JsonPatch, StrategicMergePatch


async def test_load_overlay(config_tree: Path) -> None:
    """An overlay is loaded with the base it references."""
    layer = await ManifestLoader(config_tree).load_overlay("production")
    assert layer.path == (config_tree / "overlays/production").resolve()
    assert layer.documents == []
    assert len(layer.patches) == 1
    assert isinstance(layer.patches[0], StrategicMergePatch)
    (base,) = layer.children
    assert [str(doc.resource_id) for doc in base.documents] == [
        "Namespace/app",
        "Deployment.apps/app/web",
        "Service/app/web",
    ]
    assert [spec.name for spec in base.generators] == ["app-config"]
    assert len(layer.all_documents) == 3


async def test_load_directory_path(config_tree: Path) -> None:
    """A directory relative to the root may be loaded as an overlay."""
    layer = await ManifestLoader(config_tree).load_overlay("base")
    assert len(layer.documents) == 3
    assert layer.children == []


async def test_overlay_not_found(config_tree: Path) -> None:
    """A missing overlay fails to load."""
    with pytest.raises(NotFoundError, match="staging"):
        await ManifestLoader(config_tree).load_overlay("staging")


async def test_missing_index_file(write_files: Callable[[dict[str, str]], Path]) -> None:
    """A directory without an index file fails to load."""
    root = write_files({"overlays/empty/README.md": "nothing here"})
    with pytest.raises(NotFoundError, match="No index file"):
        await ManifestLoader(root).load_overlay("empty")


async def test_missing_resource(write_files: Callable[[dict[str, str]], Path]) -> None:
    """A resource that does not exist fails to load."""
    root = write_files(
        {"overlays/a/kustomization.yaml": "resources:\n  - missing.yaml\n"}
    )
    with pytest.raises(NotFoundError, match="missing.yaml"):
        await ManifestLoader(root).load_overlay("a")


async def test_missing_patch_file(write_files: Callable[[dict[str, str]], Path]) -> None:
    """A patch file that does not exist fails to load."""
    root = write_files(
        {"overlays/a/kustomization.yaml": "patches:\n  - path: missing.yaml\n"}
    )
    with pytest.raises(NotFoundError, match="missing.yaml"):
        await ManifestLoader(root).load_overlay("a")


@pytest.mark.parametrize(
    "content",
    [
        "apiVersion: v1\nkind: ConfigMap\nmetadata: [\n",
        "apiVersion: v1\nkind: ConfigMap\n",
        "- just\n- a list\n",
    ],
)
async def test_malformed_resource(
    write_files: Callable[[dict[str, str]], Path], content: str
) -> None:
    """Malformed resource documents fail to load."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": "resources:\n  - bad.yaml\n",
            "overlays/a/bad.yaml": content,
        }
    )
    with pytest.raises(ParseError):
        await ManifestLoader(root).load_overlay("a")


async def test_remote_resource(write_files: Callable[[dict[str, str]], Path]) -> None:
    """Remote resources are not supported."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": (
                "resources:\n  - https://github.com/example/repo//deploy\n"
            )
        }
    )
    with pytest.raises(ParseError, match="Remote resources"):
        await ManifestLoader(root).load_overlay("a")


async def test_overlay_cycle(write_files: Callable[[dict[str, str]], Path]) -> None:
    """Overlays that reference each other fail before any patch is read."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": """
                resources:
                  - ../b
                patches:
                  - path: not-read.yaml
            """,
            "overlays/b/kustomization.yaml": """
                resources:
                  - ../a
            """,
        }
    )
    with pytest.raises(CycleError) as exc_info:
        await ManifestLoader(root).load_overlay("a")
    assert exc_info.value.cycle == ["overlays/a", "overlays/b", "overlays/a"]
    assert "overlays/a -> overlays/b -> overlays/a" in str(exc_info.value)


async def test_diamond_is_not_a_cycle(
    write_files: Callable[[dict[str, str]], Path],
) -> None:
    """Two layers may reference the same base."""
    root = write_files(
        {
            "base/kustomization.yaml": "",
            "components/one/kustomization.yaml": "resources:\n  - ../../base\n",
            "components/two/kustomization.yaml": "resources:\n  - ../../base\n",
            "overlays/a/kustomization.yaml": """
                resources:
                  - ../../components/one
                  - ../../components/two
            """,
        }
    )
    layer = await ManifestLoader(root).load_overlay("a")
    assert [len(child.children) for child in layer.children] == [1, 1]


async def test_patch_styles(write_files: Callable[[dict[str, str]], Path]) -> None:
    """Patches are loaded in order from every patch field."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": """
                patchesStrategicMerge:
                  - scale.yaml
                patchesJson6902:
                  - path: ops.yaml
                    target:
                      kind: Deployment
                      name: web
                patches:
                  - patch: |
                      - op: remove
                        path: /spec/paused
                    target:
                      kind: Deployment
            """,
            "overlays/a/scale.yaml": """
                apiVersion: apps/v1
                kind: Deployment
                metadata:
                  name: web
                spec:
                  replicas: 2
            """,
            "overlays/a/ops.yaml": """
                - op: replace
                  path: /spec/replicas
                  value: 4
            """,
        }
    )
    layer = await ManifestLoader(root).load_overlay("a")
    assert [type(patch) for patch in layer.patches] == [
        StrategicMergePatch,
        JsonPatch,
        JsonPatch,
    ]


async def test_json6902_requires_target(
    write_files: Callable[[dict[str, str]], Path],
) -> None:
    """Field operation patches need a target."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": "patchesJson6902:\n  - path: ops.yaml\n",
            "overlays/a/ops.yaml": "- op: remove\n  path: /spec\n",
        }
    )
    with pytest.raises(ParseError, match="target"):
        await ManifestLoader(root).load_overlay("a")


async def test_generator_sources(write_files: Callable[[dict[str, str]], Path]) -> None:
    """Generator files are read as data and env files into literals."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": """
                configMapGenerator:
                  - name: settings
                    literals:
                      - MODE=fast
                    files:
                      - app.ini
                      - renamed.ini=other.ini
                    envs:
                      - settings.env
            """,
            "overlays/a/app.ini": "[app]\nname=web\n",
            "overlays/a/other.ini": "x=1\n",
            "overlays/a/settings.env": "# comment\nLOG_LEVEL=debug\n\nTIMEOUT=5\n",
        }
    )
    layer = await ManifestLoader(root).load_overlay("a")
    (spec,) = layer.generators
    assert spec.literals == ["MODE=fast", "LOG_LEVEL=debug", "TIMEOUT=5"]
    assert spec.file_data == {
        "app.ini": "[app]\nname=web\n",
        "renamed.ini": "x=1\n",
    }
    assert spec.files == []
    assert spec.envs == []


async def test_generator_file_verbatim(
    write_files: Callable[[dict[str, str]], Path]
) -> None:
    """File contents are kept as written, including surrounding quotes."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": """
                configMapGenerator:
                  - name: motd
                    literals:
                      - GREETING="hi"
                    files:
                      - motd.txt
            """,
            "overlays/a/motd.txt": '"hello"',
        }
    )
    layer = await ManifestLoader(root).load_overlay("a")
    (spec,) = layer.generators
    assert generator_data(spec) == {"GREETING": "hi", "motd.txt": '"hello"'}


async def test_generator_duplicate_file_key(
    write_files: Callable[[dict[str, str]], Path]
) -> None:
    """Two file sources may not share a key."""
    root = write_files(
        {
            "overlays/a/kustomization.yaml": """
                configMapGenerator:
                  - name: motd
                    files:
                      - motd.txt
                      - motd.txt=other.txt
            """,
            "overlays/a/motd.txt": "a",
            "overlays/a/other.txt": "b",
        }
    )
    with pytest.raises(ParseError, match="Duplicate key 'motd.txt'"):
        await ManifestLoader(root).load_overlay("a")
