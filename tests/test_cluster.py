"""Tests for cluster endpoints."""

from pathlib import Path
import textwrap

import pytest

from overlay_apply.cluster import InMemoryCluster, KubectlCluster
from overlay_apply.exceptions import ClusterException, CommandException
from overlay_apply.manifest import ResourceDocument, ResourceId

CONFIG_MAP_ID = ResourceId("", "ConfigMap", "app", "settings")


def config_map(value: str = "1") -> ResourceDocument:
    return ResourceDocument.parse_doc(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "settings", "namespace": "app"},
            "data": {"value": value},
        }
    )


async def test_in_memory_cluster() -> None:
    """Create, update and delete resources."""
    cluster = InMemoryCluster()
    assert await cluster.get(CONFIG_MAP_ID) is None
    await cluster.create(config_map())
    with pytest.raises(ClusterException, match="already exists"):
        await cluster.create(config_map())
    await cluster.update(config_map("2"))
    live = await cluster.get(CONFIG_MAP_ID)
    assert live is not None
    assert live.contents["data"] == {"value": "2"}
    await cluster.delete(CONFIG_MAP_ID)
    assert cluster.documents == {}
    with pytest.raises(ClusterException, match="not found"):
        await cluster.delete(CONFIG_MAP_ID)
    assert [op for op, _ in cluster.calls] == [
        "get",
        "create",
        "create",
        "update",
        "get",
        "delete",
        "delete",
    ]


async def test_in_memory_failures() -> None:
    """Injected failures reject mutations of a resource."""
    cluster = InMemoryCluster()
    cluster.fail_on(CONFIG_MAP_ID, "quota exceeded")
    with pytest.raises(ClusterException, match="quota exceeded"):
        await cluster.create(config_map())
    assert cluster.documents == {}


@pytest.fixture(name="kubectl")
def kubectl_fixture(tmp_path: Path) -> Path:
    """A fake kubectl that records its arguments and input."""
    script = tmp_path / "kubectl"
    script.write_text(
        textwrap.dedent(
            f"""\
            #!/bin/sh
            echo "$@" >> {tmp_path}/args.log
            case "$*" in
              *"get configmap settings"*)
                printf 'apiVersion: v1\\nkind: ConfigMap\\nmetadata:\\n  name: settings\\n  namespace: app\\n'
                ;;
              *"create"*|*"replace"*)
                cat > {tmp_path}/stdin.yaml
                ;;
              *"delete"*)
                echo "Error from server (Forbidden)" >&2
                exit 1
                ;;
            esac
            """
        )
    )
    script.chmod(0o755)
    return script


async def test_kubectl_get(tmp_path: Path, kubectl: Path) -> None:
    """Resources are read with kubectl get."""
    cluster = KubectlCluster(context="prod", kubectl=str(kubectl))
    doc = await cluster.get(CONFIG_MAP_ID)
    assert doc is not None
    assert doc.resource_id == CONFIG_MAP_ID
    assert (tmp_path / "args.log").read_text() == (
        "--context prod get configmap settings --namespace app "
        "--ignore-not-found --output yaml\n"
    )
    assert await cluster.get(ResourceId("apps", "Deployment", "app", "web")) is None


async def test_kubectl_create(tmp_path: Path, kubectl: Path) -> None:
    """Documents are sent to kubectl on stdin."""
    cluster = KubectlCluster(kubeconfig="/tmp/config", kubectl=str(kubectl))
    await cluster.update(config_map())
    assert (tmp_path / "args.log").read_text() == (
        "--kubeconfig /tmp/config replace --filename -\n"
    )
    assert "name: settings" in (tmp_path / "stdin.yaml").read_text()


async def test_kubectl_failure(kubectl: Path) -> None:
    """A failed kubectl call is a cluster error."""
    cluster = KubectlCluster(kubectl=str(kubectl))
    with pytest.raises(ClusterException, match="Forbidden"):
        await cluster.delete(CONFIG_MAP_ID)


async def test_kubectl_create_failure() -> None:
    """A rejected create is a cluster error raised by the command runner."""
    cluster = KubectlCluster(kubectl="/bin/false")
    with pytest.raises(ClusterException, match="return code 1") as exc_info:
        await cluster.create(config_map())
    assert isinstance(exc_info.value, CommandException)
