"""Pytest configuration and shared fixtures for the meshecho test suite."""

import json
import threading
import time
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from unittest.mock import MagicMock
from urllib.parse import urlsplit

import httpx
import pytest

from meshecho.echo.builder import Builder
from meshecho.echo.config import Config, Port, Protocol
from meshecho.echo.instance import Instance
from meshecho.echo.sidecar import Sidecar
from meshecho.echo.workload import Workload
from meshecho.kube.cluster import Cluster


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast tests without external dependencies")
    config.addinivalue_line("markers", "integration: Tests exercising several components together")
    config.addinivalue_line("markers", "real_sleep: Keep time.sleep real for timing-sensitive tests")


@pytest.fixture(autouse=True)
def patch_time_sleep(request: pytest.FixtureRequest, monkeypatch):
    """Make sleep instant unless the test measures elapsed time."""
    if request.node.get_closest_marker("real_sleep") is None:
        monkeypatch.setattr(time, "sleep", lambda x: None)


# ============================================================================
# In-memory mesh
# ============================================================================


class FakeMesh:
    """Deployer and workload controller backed by an in-memory network.

    Forward calls are routed through httpx.MockTransport handlers, so the
    real Workload and Instance code paths run unchanged.
    """

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.unreachable: Set[Tuple[str, str]] = set()
        self.failures_left: Dict[Tuple[str, str], int] = {}
        self.deploy_errors: Dict[str, Exception] = {}
        self.list_errors: List[Exception] = []
        self.deployed: List[Tuple[str, str]] = []
        self.restarts: List[str] = []
        self._pods: Dict[Tuple[str, str], List[str]] = {}
        self._workloads: Dict[str, Workload] = {}
        self._generation = count(1)
        self._ips = count(10)
        self._lock = threading.Lock()

    # Deployer -------------------------------------------------------------

    def deploy(self, config: Config, cluster: Cluster) -> Instance:
        if config.service in self.deploy_errors:
            raise self.deploy_errors[config.service]
        gen = next(self._generation)
        self._pods[(cluster.name, config.service)] = [
            f"{config.service}-{gen}-{i}" for i in range(config.replicas)
        ]
        self.deployed.append((config.service, cluster.name))
        address = "" if config.headless else f"10.96.0.{next(self._ips)}"
        return Instance(config=config, cluster=cluster, address=address, controller=self)

    # WorkloadController ---------------------------------------------------

    def list_workloads(self, instance: Instance) -> List[Workload]:
        pods = self._pods.get((instance.cluster.name, instance.config.service), [])
        out = []
        with self._lock:
            if self.list_errors:
                raise self.list_errors.pop(0)
            for pod in pods:
                if pod not in self._workloads:
                    client = httpx.Client(
                        base_url=f"http://{pod}:8080",
                        transport=httpx.MockTransport(self._handler(instance)),
                    )
                    address = f"10.1.0.{len(self._workloads)}"
                    self._workloads[pod] = Workload(pod_name=pod, address=address, client=client)
                out.append(self._workloads[pod])
        return out

    def restart(self, instance: Instance) -> None:
        self.restarts.append(instance.config.service)
        gen = next(self._generation)
        self._pods[(instance.cluster.name, instance.config.service)] = [
            f"{instance.config.service}-{gen}-{i}" for i in range(instance.config.replicas)
        ]

    def remove_pods(self, service: str, cluster: str = "primary") -> None:
        self._pods[(cluster, service)] = []

    # Network --------------------------------------------------------------

    def _handler(self, instance: Instance) -> Callable[[httpx.Request], httpx.Response]:
        src = instance.config.service

        def handle(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            url = body["url"]
            dst = urlsplit(url).hostname.split(".")[0]
            self.calls.append((src, dst))

            scheme = urlsplit(url).scheme
            if scheme not in ("http", "https"):
                return httpx.Response(400, json={"detail": f"Unsupported scheme for forwarding: {scheme}"})

            if (src, dst) in self.unreachable:
                raise httpx.ConnectError("connection refused", request=request)
            remaining = self.failures_left.get((src, dst), 0)
            if remaining > 0:
                self.failures_left[(src, dst)] = remaining - 1
                raise httpx.ConnectError("connection refused", request=request)

            responses = [
                {
                    "id": i,
                    "url": url,
                    "code": 200,
                    "protocol": "HTTP/1.1",
                    "method": body.get("method", "GET"),
                    "hostname": f"{dst}-0",
                    "version": "v1",
                    "cluster": instance.cluster.name,
                    "headers": body.get("headers", {}),
                    "body": body.get("message", ""),
                }
                for i in range(body.get("count", 1))
            ]
            return httpx.Response(200, json={"responses": responses})

        return handle

    def calls_between(self, src: str, dst: str) -> int:
        return sum(1 for c in self.calls if c == (src, dst))


@pytest.fixture
def mesh() -> FakeMesh:
    return FakeMesh()


@pytest.fixture
def primary() -> Cluster:
    return Cluster(name="primary")


@pytest.fixture
def builder(mesh: FakeMesh, primary: Cluster) -> Builder:
    return Builder(
        deployer=mesh,
        clusters=(primary,),
        convergence_timeout=5.0,
        convergence_concurrency=4,
        check_delay=0.0,
    )


def echo_config(service: str, **kwargs: Any) -> Config:
    """Config with a single HTTP port, as most tests need."""
    kwargs.setdefault(
        "ports", [Port(name="http", protocol=Protocol.HTTP, service_port=80, instance_port=18080)]
    )
    kwargs.setdefault("namespace", "echo")
    return Config(service=service, **kwargs)


# ============================================================================
# Sidecar admin endpoint
# ============================================================================


def make_sidecar(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> Sidecar:
    client = httpx.Client(base_url="http://10.1.0.7:15000", transport=httpx.MockTransport(handler))
    return Sidecar(pod_name="a-1-0", namespace="echo", address="10.1.0.7", client=client, **kwargs)


# ============================================================================
# Kubernetes mocks
# ============================================================================


def create_mock_pod(
    name: str,
    namespace: str = "echo",
    ip: str = "10.1.0.1",
    ready: bool = True,
    containers: Optional[List[str]] = None,
) -> MagicMock:
    """Create a mock V1Pod."""
    mock_pod = MagicMock()
    mock_pod.metadata.name = name
    mock_pod.metadata.namespace = namespace
    mock_pod.metadata.deletion_timestamp = None
    mock_pod.status.phase = "Running"
    mock_pod.status.pod_ip = ip
    mock_pod.status.conditions = [MagicMock(type="Ready", status="True" if ready else "False")]
    mock_pod.spec.containers = []
    for container in containers or ["app", "istio-proxy"]:
        c = MagicMock()
        c.name = container
        mock_pod.spec.containers.append(c)
    mock_pod.spec.init_containers = []
    return mock_pod


def pod_list(*pods: MagicMock) -> MagicMock:
    mock_list = MagicMock()
    mock_list.items = list(pods)
    return mock_list


@pytest.fixture
def k8s_client() -> Dict[str, Any]:
    """Mock Kubernetes API groups for a single cluster."""
    mock_core = MagicMock()
    mock_apps = MagicMock()

    mock_core.list_namespaced_pod.return_value = pod_list(
        create_mock_pod("a-v1-abc12", ip="10.1.0.1"),
    )

    mock_service = MagicMock()
    mock_service.spec.cluster_ip = "10.96.0.20"
    mock_core.read_namespaced_service.return_value = mock_service

    mock_core.read_namespaced_pod_log.return_value = "INFO: Server started successfully"

    return {
        "core": mock_core,
        "apps": mock_apps,
    }
