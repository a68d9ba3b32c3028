"""Shared pytest fixtures for the test suite.

Provides reusable fixtures for building units and graphs, a scriptable
in-memory cluster and fake HTTP backends.
"""

# Add project root to path
import sys
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent))

from orchestrator.cluster import InMemoryClusterAPI  # noqa: E402
from orchestrator.graph.models import DeployableUnit, GraphDefinition  # noqa: E402


def deployment_manifest(name: str, replicas: int = 1, image: str = "nginx:1.27") -> dict:
    """Minimal Deployment manifest.

    Args:
        name: Deployment name (also used as the app label).
        replicas: Desired replica count.
        image: Container image.

    Returns:
        Manifest dictionary.
    """
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "labels": {"app": name}},
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {
                "metadata": {"labels": {"app": name}},
                "spec": {"containers": [{"name": name, "image": image}]},
            },
        },
    }


def make_unit(
    unit_id: str,
    depends_on: tuple[str, ...] | list[str] = (),
    replicas: int = 1,
    **kwargs: Any,
) -> DeployableUnit:
    """Build a unit with one inline Deployment named after it."""
    kwargs.setdefault("inline", [deployment_manifest(unit_id, replicas)])
    return DeployableUnit(id=unit_id, depends_on=set(depends_on), **kwargs)


def write_yaml(path: Path, data: Any) -> Path:
    """Write data as YAML and return the path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))
    return path


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def cluster() -> InMemoryClusterAPI:
    """Fresh in-memory cluster."""
    return InMemoryClusterAPI()


@pytest.fixture
def unit_factory() -> Callable[..., DeployableUnit]:
    """Factory fixture for deployable units."""
    return make_unit


@pytest.fixture
def voting_app_units() -> list[DeployableUnit]:
    """The voting-app service graph.

    redis and db are independent roots; worker needs both; vote needs
    redis; result needs db.
    """
    return [
        make_unit("redis"),
        make_unit("db"),
        make_unit("worker", ["redis", "db"]),
        make_unit("vote", ["redis"]),
        make_unit("result", ["db"]),
    ]


@pytest.fixture
def voting_app_graph(voting_app_units: list[DeployableUnit]) -> GraphDefinition:
    """Voting-app graph definition without endpoints or load test."""
    return GraphDefinition(name="voting-app", units=voting_app_units)


@pytest.fixture
def graph_file(tmp_path: Path) -> Generator[Path, None, None]:
    """Graph YAML file with manifests on disk.

    Yields:
        Path to the graph file.
    """
    manifests = tmp_path / "manifests"
    write_yaml(manifests / "redis.yaml", deployment_manifest("redis"))
    write_yaml(manifests / "db.yaml", deployment_manifest("db"))
    write_yaml(manifests / "worker.yaml", deployment_manifest("worker"))

    graph = {
        "name": "test-graph",
        "description": "Graph for unit testing",
        "units": [
            {"id": "redis", "manifests": ["manifests/redis.yaml"]},
            {"id": "db", "manifests": ["manifests/db.yaml"]},
            {
                "id": "worker",
                "manifests": ["manifests/worker.yaml"],
                "depends_on": ["redis", "db"],
            },
        ],
        "settings": {"poll_interval": 0.01, "readiness_timeout": 1},
    }
    yield write_yaml(tmp_path / "graph.yaml", graph)


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Run history directory."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def mock_http() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Factory for AsyncClients backed by a request handler."""
    return mock_client


@pytest.fixture
def manifest_factory() -> Callable[..., dict]:
    """Factory fixture for Deployment manifests."""
    return deployment_manifest
