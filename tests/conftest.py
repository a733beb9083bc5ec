"""Test fixtures for overlay-apply."""

from collections.abc import Callable, Generator
import logging
from pathlib import Path
import textwrap

import pytest

from overlay_apply import context

_LOGGER = logging.getLogger(__name__)

# Global collector for the whole session
SESSION_COLLECTOR = context.TraceCollector()

BASE_FILES = {
    "base/kustomization.yaml": """
        resources:
          - namespace.yaml
          - deployment.yaml
          - service.yaml
        configMapGenerator:
          - name: app-config
            namespace: app
            literals:
              - LOG_LEVEL=info
              - FEATURE_X=off
    """,
    "base/namespace.yaml": """
        apiVersion: v1
        kind: Namespace
        metadata:
          name: app
    """,
    "base/deployment.yaml": """
        apiVersion: apps/v1
        kind: Deployment
        metadata:
          name: web
          namespace: app
        spec:
          replicas: 1
          selector:
            matchLabels:
              app: web
          template:
            metadata:
              labels:
                app: web
            spec:
              containers:
                - name: web
                  image: nginx:1.25
                  envFrom:
                    - configMapRef:
                        name: app-config
    """,
    "base/service.yaml": """
        apiVersion: v1
        kind: Service
        metadata:
          name: web
          namespace: app
        spec:
          selector:
            app: web
          ports:
            - port: 80
    """,
    "overlays/production/kustomization.yaml": """
        resources:
          - ../../base
        patches:
          - path: replicas.yaml
    """,
    "overlays/production/replicas.yaml": """
        apiVersion: apps/v1
        kind: Deployment
        metadata:
          name: web
          namespace: app
        spec:
          replicas: 3
    """,
}


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Write a configuration tree, dedenting each file."""
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content).lstrip("\n"))
    return root


@pytest.fixture(name="write_files")
def write_files_fixture(tmp_path: Path) -> Callable[[dict[str, str]], Path]:
    """Return a function that writes files under the test directory."""

    def write(files: dict[str, str]) -> Path:
        return write_tree(tmp_path, files)

    return write


@pytest.fixture
def config_tree(tmp_path: Path) -> Path:
    """A base with a production overlay that scales the deployment."""
    return write_tree(tmp_path, BASE_FILES)


@pytest.fixture(autouse=True)
def trace_capture() -> Generator[None, None, None]:
    """Capture traces for each test and add them to the session collector."""
    with context.get_trace_collector() as collector:
        yield
        for name, duration in collector.timings.items():
            SESSION_COLLECTOR.add(name, duration)


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    """Print the trace summary at the end of the session."""
    if not SESSION_COLLECTOR.timings:
        return

    print("\n\n" + "=" * 20 + " PERFORMANCE TRACE SUMMARY " + "=" * 20)
    for name, duration in sorted(
        SESSION_COLLECTOR.timings.items(), key=lambda x: x[1], reverse=True
    ):
        count = SESSION_COLLECTOR.counts[name]
        print(
            f" - {name:<40}: {duration:>6.4f}s (count: {count:>3}, avg: {duration / count:>6.4f}s)"
        )
    print("=" * 67 + "\n")
